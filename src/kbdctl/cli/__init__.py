"""
kbdctl Command-Line Interface
=============================

- **kbdctl**: read the GMK87 configuration and set its clock

The tool is a Click application; errors and exit codes are handled in
`kbdctl.cli.errors`.
"""

__all__ = ["kbdctl"]
