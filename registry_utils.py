"""
ScreenConnect Maintenance - Registry Utilities
Copyright (c) 2025 Kiefer Networks

Registry lookups for the installed ScreenConnect client and the Datto RMM
custom field store.
"""

import re
import sys
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, Tuple
from urllib.parse import parse_qs

# Windows-specific imports
if sys.platform == 'win32':
    import winreg
else:
    winreg = None

UNINSTALL_PATHS = [
    r"SOFTWARE\Microsoft\Windows\CurrentVersion\Uninstall",
    r"SOFTWARE\WOW6432Node\Microsoft\Windows\CurrentVersion\Uninstall",
]
SERVICES_PATH = r"SYSTEM\CurrentControlSet\Services"
CENTRASTAGE_PATH = r"SOFTWARE\CentraStage"

GUID_PATTERN = re.compile(r'^\{?[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}\}?$')
DATTO_FIELD_PATTERN = re.compile(r'^(?:custom)?([0-9]{1,2})$', re.IGNORECASE)
DATTO_FIELD_MAX = 30


@dataclass
class InstalledProgram:
    """An entry from the Windows Uninstall registry keys."""
    product_code: str
    display_name: str
    version: str = ""
    install_date: Optional[date] = None
    install_location: str = ""


def _require_winreg():
    if winreg is None:
        raise RuntimeError("Registry operations only available on Windows")


def _query_value(key, name, default=None):
    try:
        value, _ = winreg.QueryValueEx(key, name)
        return value
    except OSError:
        return default


def parse_install_date(value) -> Optional[date]:
    """Parse the YYYYMMDD InstallDate string written by Windows Installer."""
    if not value:
        return None
    try:
        return datetime.strptime(str(value).strip(), "%Y%m%d").date()
    except ValueError:
        logging.warning(f"Unrecognised install date: {value!r}")
        return None


def parse_version(value) -> Tuple[int, ...]:
    """
    Parse a dotted version string into a tuple of ints.

    Raises:
        ValueError: If any component is not a number.
    """
    text = str(value).strip()
    if not text:
        raise ValueError("Empty version string")
    return tuple(int(part) for part in text.split('.'))


def version_below(version, floor) -> bool:
    """Return True if version is lower than floor. An unparseable version counts as lower."""
    try:
        current = parse_version(version)
    except ValueError:
        return True
    minimum = parse_version(floor)
    width = max(len(current), len(minimum))
    current += (0,) * (width - len(current))
    minimum += (0,) * (width - len(minimum))
    return current < minimum


def find_installed_program(display_name) -> Optional[InstalledProgram]:
    """
    Look up an installed program by its exact display name.

    Searches the 64-bit and 32-bit Uninstall keys of HKLM. The subkey name of
    an MSI install is its product code.

    Args:
        display_name: DisplayName to match, case-insensitive.

    Returns:
        InstalledProgram if found, None otherwise.
    """
    _require_winreg()
    wanted = display_name.strip().lower()
    for base_path in UNINSTALL_PATHS:
        try:
            base = winreg.OpenKey(winreg.HKEY_LOCAL_MACHINE, base_path, 0,
                                  winreg.KEY_READ | winreg.KEY_WOW64_64KEY)
        except OSError:
            continue
        with base:
            i = 0
            while True:
                try:
                    subkey_name = winreg.EnumKey(base, i)
                except OSError:
                    break
                i += 1
                try:
                    with winreg.OpenKey(base, subkey_name) as subkey:
                        name = _query_value(subkey, "DisplayName", "")
                        if not name or name.strip().lower() != wanted:
                            continue
                        program = InstalledProgram(
                            product_code=subkey_name,
                            display_name=name,
                            version=_query_value(subkey, "DisplayVersion", ""),
                            install_date=parse_install_date(_query_value(subkey, "InstallDate")),
                            install_location=_query_value(subkey, "InstallLocation", ""),
                        )
                        logging.debug(f"Found {name} under {base_path}\\{subkey_name}")
                        return program
                except OSError:
                    continue
    return None


def get_service_image_path(service_name) -> Optional[str]:
    """Read the ImagePath (command line) of a service."""
    _require_winreg()
    try:
        with winreg.OpenKey(winreg.HKEY_LOCAL_MACHINE, f"{SERVICES_PATH}\\{service_name}") as key:
            return _query_value(key, "ImagePath")
    except OSError:
        return None


def extract_session_guid(image_path) -> Optional[str]:
    """
    Extract the session GUID (the s= parameter) from a client command line.

    The client service command line looks like
    "...ScreenConnect.ClientService.exe" "?e=Access&y=Guest&h=host&p=8041&s=<guid>&k=..."
    """
    if not image_path or '?' not in image_path:
        return None
    query = image_path.split('?', 1)[1].strip().strip('"')
    values = parse_qs(query).get('s', [])
    for value in values:
        if GUID_PATTERN.match(value):
            return value.strip('{}')
    return None


def normalize_datto_field(field) -> str:
    """
    Normalise a Datto custom field reference to its registry value name.

    Accepts "Custom7", "custom7" or "7".

    Raises:
        ValueError: If the reference is not one of Custom1..Custom30.
    """
    match = DATTO_FIELD_PATTERN.match(str(field).strip())
    if not match or not 1 <= int(match.group(1)) <= DATTO_FIELD_MAX:
        raise ValueError(f"Invalid Datto custom field: {field!r} (expected Custom1..Custom{DATTO_FIELD_MAX})")
    return f"Custom{int(match.group(1))}"


def write_datto_custom_field(field, value):
    """Write a value into a Datto RMM user-defined field."""
    _require_winreg()
    name = normalize_datto_field(field)
    try:
        with winreg.CreateKeyEx(winreg.HKEY_LOCAL_MACHINE, CENTRASTAGE_PATH, 0,
                                winreg.KEY_WRITE | winreg.KEY_WOW64_64KEY) as key:
            winreg.SetValueEx(key, name, 0, winreg.REG_SZ, str(value))
        logging.info(f"Wrote Datto custom field {name}")
    except OSError as e:
        logging.error(f"Error writing Datto custom field {name}: {e}")
        raise
