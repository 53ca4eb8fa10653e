"""Check availability of system dependencies at runtime."""

import re
import shutil
import subprocess

from constants import DEFAULT_SOURCE

# IPU6 PCI device id -> camera HAL flavour
IPU6_VARIANTS: dict[str, str] = {
    "7d19": "ipu6epmtl",  # Meteor Lake
    "a75d": "ipu6epmtl",  # Arrow Lake
    "462e": "ipu6ep",  # Alder Lake / Raptor Lake
    "9a19": "ipu6",  # Tiger Lake
    "4e19": "ipu6",  # Jasper Lake
}

# Meteor Lake sensors are powered through a Lattice USB-IO bridge; older
# platforms use the Intel LJCA bridge with a different driver stack.
LATTICE_USBIO_VENDOR = "2ac1"
INTEL_LJCA_ID = ("8086", "0b63")

# modules that must load at boot for the IPU6 sensor path
IPU6_MODULES = ("usbio", "gpio-usbio", "i2c-usbio", "intel-ipu6-psys")

CRITICAL = ("gst-launch", "gstreamer", DEFAULT_SOURCE, "v4l2loopback")


def _cmd_exists(name: str) -> bool:
    return shutil.which(name) is not None


def _module_importable(module: str) -> bool:
    try:
        __import__(module)
        return True
    except ImportError:
        return False


def _gst_element_exists(name: str, plugin_path: str = "") -> bool:
    try:
        import gi

        gi.require_version("Gst", "1.0")
        from gi.repository import Gst
    except (ImportError, ValueError):
        return False
    Gst.init(None)
    if plugin_path:
        Gst.Registry.get().scan_path(plugin_path)
    return Gst.ElementFactory.find(name) is not None


def _kmod_available(name: str) -> bool:
    try:
        result = subprocess.run(
            ["modinfo", name],
            capture_output=True,
            timeout=5,
        )
        return result.returncode == 0
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return False


def parse_ipu6_variant(lspci_output: str) -> tuple[str, str] | None:
    """Return ``(pci_id, variant)`` from ``lspci -nn`` output, if an IPU is present."""
    for line in lspci_output.splitlines():
        low = line.lower()
        if "multimedia controller" not in low or "intel" not in low:
            continue
        match = re.search(r"\[8086:([0-9a-f]{4})\]", line, re.IGNORECASE)
        if match:
            pci_id = match.group(1).lower()
            return pci_id, IPU6_VARIANTS.get(pci_id, "unknown")
    return None


def detect_ipu6() -> tuple[str, str] | None:
    try:
        result = subprocess.run(
            ["lspci", "-nn"],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return None
    return parse_ipu6_variant(result.stdout)


def parse_usb_bridge(lsusb_output: str) -> str | None:
    """Return the USB-IO bridge kind ("usbio" or "ljca") from ``lsusb`` output."""
    found = None
    for line in lsusb_output.splitlines():
        match = re.search(r"\bID ([0-9a-f]{4}):([0-9a-f]{4})\b", line, re.IGNORECASE)
        if not match:
            continue
        vendor, product = match.group(1).lower(), match.group(2).lower()
        if vendor == LATTICE_USBIO_VENDOR:
            return "usbio"
        if (vendor, product) == INTEL_LJCA_ID:
            found = "ljca"
    return found


def detect_usb_bridge() -> str | None:
    try:
        result = subprocess.run(
            ["lsusb"],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return None
    return parse_usb_bridge(result.stdout)


def check_all(plugin_path: str = "") -> dict[str, bool]:
    """Return dict mapping dependency name → available bool."""
    deps = {
        "gst-launch": _cmd_exists("gst-launch-1.0"),
        "gstreamer": _module_importable("gi"),
        DEFAULT_SOURCE: _gst_element_exists(DEFAULT_SOURCE, plugin_path),
        "v4l2loopback": _kmod_available("v4l2loopback"),
        "v4l2-ctl": _cmd_exists("v4l2-ctl"),
        "pipewire": _cmd_exists("pw-cli"),
        "pkexec": _cmd_exists("pkexec"),
        "lsusb": _cmd_exists("lsusb"),
    }
    for module in IPU6_MODULES:
        deps[module] = _kmod_available(module)
    return deps


def missing(deps: dict[str, bool]) -> list[str]:
    """Return the critical dependencies absent from *deps*."""
    return [d for d in CRITICAL if not deps.get(d, False)]
