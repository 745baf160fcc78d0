"""
USB Transport for the GMK87
===========================

This module provides the pyusb-backed Transport used to reach the
keyboard's vendor interface. It handles:

- Device enumeration by vendor/product id
- Claiming the vendor interface (detaching the kernel HID driver first)
- Locating the IN and OUT interrupt endpoints
- Cancellable reads, issued in short slices
- Ordered teardown of everything acquired during open

Device Layout
-------------
The GMK87 enumerates several HID interfaces. Configuration traffic goes
through interface 3, which has one interrupt IN and one interrupt OUT
endpoint with a 64-byte maximum packet size. On Linux the usbhid driver
owns the interface, so it must be detached before claiming and is
re-attached on close.

Teardown
--------
Every resource acquired during open registers a release stage with a
ResourceGuard. Stages run in reverse order of acquisition:

1. release interface
2. re-attach kernel driver
3. reset device
4. dispose context resources

A failing stage does not stop the ones after it; all failures are
reported together as one DeviceCloseError.

Permissions
-----------
Without root, Linux needs a udev rule granting access to the device:

    SUBSYSTEM=="usb", ATTRS{idVendor}=="320f", ATTRS{idProduct}=="5055", MODE="0666"
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Final, Optional

import usb.core
import usb.util

from kbdctl.comms.cancel import CancelToken
from kbdctl.comms.transport import Transport
from kbdctl.errors import (
    DeviceCloseError,
    DeviceNotFoundError,
    DeviceOpenError,
    TransportError,
    TransportTimeoutError,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Zuoya GMK87
DEFAULT_VENDOR_ID: Final[int] = 0x320F
DEFAULT_PRODUCT_ID: Final[int] = 0x5055

# Vendor HID interface carrying configuration traffic
DEFAULT_INTERFACE: Final[int] = 3

# Length of one read slice; the cancel token is checked between slices
DEFAULT_READ_SLICE: Final[float] = 0.05

# Timeout for a single interrupt OUT transfer (seconds)
WRITE_TIMEOUT: Final[float] = 1.0

# Teardown stage that resets the device; only run once the open succeeded
RESET_STAGE: Final[str] = "reset device"


# =============================================================================
# Resource Guard
# =============================================================================

class ResourceGuard:
    """
    LIFO stack of named release stages.

    Example:
        guard = ResourceGuard()
        guard.push("dispose resources", lambda: usb.util.dispose_resources(dev))
        guard.push("release interface", release)
        ...
        guard.close()   # release interface, then dispose resources
    """

    def __init__(self) -> None:
        self._stages: list[tuple[str, Callable[[], Any]]] = []

    def push(self, name: str, release: Callable[[], Any]) -> None:
        """Register a release stage to run before all earlier ones."""
        self._stages.append((name, release))

    def discard(self, name: str) -> None:
        """Drop every stage registered under name without running it."""
        self._stages = [stage for stage in self._stages if stage[0] != name]

    @property
    def stages(self) -> list[str]:
        """Stage names in the order close() will run them."""
        return [name for name, _ in reversed(self._stages)]

    def __len__(self) -> int:
        return len(self._stages)

    def close(self) -> None:
        """
        Run every stage, newest first.

        The stack is emptied before the first stage runs, so a second
        call is a no-op.

        Raises:
            DeviceCloseError: If any stage raised; carries all failures.
        """
        stages, self._stages = self._stages, []
        errors: list[tuple[str, BaseException]] = []

        for name, release in reversed(stages):
            try:
                release()
                logger.debug("Teardown stage ok: %s", name)
            except Exception as e:
                logger.debug("Teardown stage failed: %s: %s", name, e)
                errors.append((name, e))

        if errors:
            raise DeviceCloseError(errors)


# =============================================================================
# Device Information
# =============================================================================

@dataclass(frozen=True)
class DeviceInfo:
    """
    A USB device matching the requested vendor/product id.

    String descriptors are None when they cannot be read, which usually
    means the current user lacks permission to open the device.
    """

    bus: Optional[int]
    address: Optional[int]
    vendor_id: int
    product_id: int
    manufacturer: Optional[str] = None
    product: Optional[str] = None
    serial_number: Optional[str] = None

    def __str__(self) -> str:
        parts = [
            f"Bus {self.bus or 0:03d} Device {self.address or 0:03d}:",
            f"ID {self.vendor_id:04x}:{self.product_id:04x}",
        ]
        name = " ".join(p for p in (self.manufacturer, self.product) if p)
        if name:
            parts.append(name)
        if self.serial_number:
            parts.append(f"[{self.serial_number}]")
        return " ".join(parts)


def _read_string(device: Any, index: int) -> Optional[str]:
    if not index:
        return None
    try:
        return usb.util.get_string(device, index)
    except (usb.core.USBError, ValueError) as e:
        logger.debug("Cannot read string descriptor %d: %s", index, e)
        return None


def list_devices(
    vendor_id: int = DEFAULT_VENDOR_ID,
    product_id: int = DEFAULT_PRODUCT_ID,
) -> list[DeviceInfo]:
    """
    List connected devices with the given vendor/product id.

    Raises:
        TransportError: If no libusb backend is available.

    Example:
        >>> for info in list_devices():
        ...     print(info)
        Bus 001 Device 007: ID 320f:5055 Zuoya GMK87
    """
    try:
        found = usb.core.find(
            find_all=True, idVendor=vendor_id, idProduct=product_id
        )
        devices = list(found or [])
    except usb.core.NoBackendError as e:
        raise TransportError(f"no USB backend available: {e}") from e

    result = []
    for dev in devices:
        info = DeviceInfo(
            bus=dev.bus,
            address=dev.address,
            vendor_id=dev.idVendor,
            product_id=dev.idProduct,
            manufacturer=_read_string(dev, dev.iManufacturer),
            product=_read_string(dev, dev.iProduct),
            serial_number=_read_string(dev, dev.iSerialNumber),
        )
        logger.debug("Found device: %s", info)
        result.append(info)
        usb.util.dispose_resources(dev)

    return result


# =============================================================================
# USB Transport
# =============================================================================

def _is_direction(direction: int) -> Callable[[Any], bool]:
    return lambda ep: usb.util.endpoint_direction(ep.bEndpointAddress) == direction


class UsbTransport(Transport):
    """
    Transport over the keyboard's vendor interface.

    Use UsbTransport.open() to create an instance; the constructor takes
    already-prepared pyusb objects.

    Example:
        with UsbTransport.open() as transport:
            transport.write(frame, cancel)
            response = transport.read(cancel, timeout=2.0)
    """

    def __init__(
        self,
        device: Any,
        interface: int,
        ep_in: Any,
        ep_out: Any,
        guard: ResourceGuard,
        read_slice: float = DEFAULT_READ_SLICE,
    ):
        self._device = device
        self._interface = interface
        self._ep_in = ep_in
        self._ep_out = ep_out
        self._guard = guard
        self.read_slice = read_slice
        self._closed = False

    @classmethod
    def open(
        cls,
        vendor_id: int = DEFAULT_VENDOR_ID,
        product_id: int = DEFAULT_PRODUCT_ID,
        interface: int = DEFAULT_INTERFACE,
        read_slice: float = DEFAULT_READ_SLICE,
    ) -> "UsbTransport":
        """
        Find the keyboard and claim its vendor interface.

        Raises:
            DeviceNotFoundError: If no matching device is connected.
            DeviceOpenError: If the device cannot be prepared. Anything
                acquired before the failure has been released.
        """
        logger.info(
            "Opening device %04x:%04x interface %d",
            vendor_id, product_id, interface
        )

        try:
            device = usb.core.find(idVendor=vendor_id, idProduct=product_id)
        except usb.core.NoBackendError as e:
            raise DeviceOpenError(f"no USB backend available: {e}") from e
        if device is None:
            raise DeviceNotFoundError(vendor_id, product_id)

        guard = ResourceGuard()
        guard.push(
            "dispose context resources",
            lambda: usb.util.dispose_resources(device),
        )
        guard.push(RESET_STAGE, device.reset)

        try:
            cls._detach_kernel_driver(device, interface, guard)

            config = device.get_active_configuration()
            if config is None:
                raise DeviceOpenError("device has no active configuration")
            intf = config[(interface, 0)]

            usb.util.claim_interface(device, interface)
            guard.push(
                "release interface",
                lambda: usb.util.release_interface(device, interface),
            )

            ep_in = usb.util.find_descriptor(
                intf, custom_match=_is_direction(usb.util.ENDPOINT_IN)
            )
            ep_out = usb.util.find_descriptor(
                intf, custom_match=_is_direction(usb.util.ENDPOINT_OUT)
            )
            if ep_in is None or ep_out is None:
                raise DeviceOpenError(
                    f"interface {interface} lacks an IN or OUT endpoint"
                )
        except DeviceOpenError:
            cls._abort(guard)
            raise
        except (usb.core.USBError, LookupError, ValueError) as e:
            cls._abort(guard)
            raise DeviceOpenError(
                f"cannot open interface {interface}: {e}"
            ) from e

        logger.debug(
            "Endpoints: IN=0x%02x OUT=0x%02x (max packet %d)",
            ep_in.bEndpointAddress, ep_out.bEndpointAddress,
            ep_in.wMaxPacketSize
        )
        return cls(device, interface, ep_in, ep_out, guard, read_slice)

    @staticmethod
    def _detach_kernel_driver(
        device: Any, interface: int, guard: ResourceGuard
    ) -> None:
        try:
            active = device.is_kernel_driver_active(interface)
        except NotImplementedError:
            # Not supported on this platform (e.g. Windows)
            return
        if not active:
            return

        device.detach_kernel_driver(interface)
        logger.debug("Detached kernel driver from interface %d", interface)
        guard.push(
            "re-attach kernel driver",
            lambda: device.attach_kernel_driver(interface),
        )

    @staticmethod
    def _abort(guard: ResourceGuard) -> None:
        # The device was never acquired; a reset would disturb its owner
        guard.discard(RESET_STAGE)
        try:
            guard.close()
        except DeviceCloseError as e:
            logger.warning("Cleanup after failed open: %s", e)

    # -------------------------------------------------------------------------
    # Transport API
    # -------------------------------------------------------------------------

    def write(self, data: bytes, cancel: CancelToken) -> int:
        self._check_open()
        cancel.raise_if_cancelled("cancelled before write")
        try:
            written = self._device.write(
                self._ep_out.bEndpointAddress,
                data,
                timeout=int(WRITE_TIMEOUT * 1000),
            )
        except usb.core.USBTimeoutError as e:
            raise TransportTimeoutError(f"write timed out: {e}") from e
        except usb.core.USBError as e:
            raise TransportError(f"failed to write data: {e}") from e
        logger.debug("Wrote %d bytes", written)
        return written

    def read(self, cancel: CancelToken, timeout: float) -> bytes:
        self._check_open()
        size = self._ep_in.wMaxPacketSize
        end = time.monotonic() + timeout

        while True:
            cancel.raise_if_cancelled("cancelled while waiting for response")
            left = end - time.monotonic()
            if left <= 0:
                raise TransportTimeoutError(f"no report within {timeout:g}s")

            slice_ms = max(1, int(min(self.read_slice, left) * 1000))
            try:
                data = self._device.read(
                    self._ep_in.bEndpointAddress, size, timeout=slice_ms
                )
            except usb.core.USBTimeoutError:
                continue
            except usb.core.USBError as e:
                raise TransportError(f"failed to read data: {e}") from e
            return bytes(data)

    def close(self) -> None:
        """
        Release the interface and reset the device.

        Raises:
            DeviceCloseError: If any teardown stage failed.
        """
        if self._closed:
            return
        self._closed = True
        logger.debug("Closing device: %s", ", ".join(self._guard.stages))
        self._guard.close()

    @property
    def is_open(self) -> bool:
        return not self._closed

    def _check_open(self) -> None:
        if self._closed:
            raise TransportError("transport is closed")
