"""
ScreenConnect Maintenance - Service Utilities
Copyright (c) 2025 Kiefer Networks

Provides thin wrappers around the Windows Service Control Manager for the
ScreenConnect client service.
"""

import os
import subprocess
import platform
import logging
import time
from enum import Enum

# Only import Windows-specific modules on Windows
if platform.system() == 'Windows':
    import pywintypes
    import win32service
    import win32serviceutil
else:
    pywintypes = None
    win32service = None
    win32serviceutil = None

ERROR_SERVICE_DOES_NOT_EXIST = 1060
ERROR_SERVICE_ALREADY_RUNNING = 1056
ERROR_SERVICE_NOT_ACTIVE = 1062

AGENT_PROCESSES = ['ScreenConnect.ClientService.exe', 'ScreenConnect.WindowsClient.exe']


class MaintenanceError(Exception):
    """Base class for maintenance run failures."""
    pass


class ServiceControlError(MaintenanceError):
    """Raised when the Service Control Manager cannot be queried."""
    pass


class ServiceStatus(Enum):
    RUNNING = "Running"
    STOPPED = "Stopped"
    PENDING = "Pending"
    NOT_FOUND = "NotFound"


def is_admin():
    """Check if the current process has administrator/root privileges."""
    system = platform.system()
    if system == 'Windows':
        import ctypes
        try:
            return ctypes.windll.shell32.IsUserAnAdmin()
        except Exception:
            return False
    else:
        return os.geteuid() == 0


def run_clean_subprocess(cmd, check=True, **kwargs):
    """
    Run a subprocess with a clean environment.

    Removes LD_LIBRARY_PATH to avoid PyInstaller bundled library conflicts.
    """
    env = os.environ.copy()
    env.pop('LD_LIBRARY_PATH', None)

    try:
        result = subprocess.run(cmd, env=env, check=check, capture_output=True, text=True, **kwargs)
        return result
    except subprocess.CalledProcessError as e:
        if check:
            logging.error(f"Command failed: {' '.join(cmd)}: {e.stderr}")
            raise
        return e
    except Exception as e:
        logging.error(f"Error executing command {' '.join(cmd)}: {e}")
        if check:
            raise
        return None


def _require_win32():
    if win32serviceutil is None:
        raise ServiceControlError(f"Service control is not available on {platform.system()}")


def query_service_status(service_name):
    """
    Query the current state of a Windows service.

    Args:
        service_name: Name of the service (not the display name).

    Returns:
        ServiceStatus: NOT_FOUND when the service is not registered.

    Raises:
        ServiceControlError: If the SCM query fails for any other reason.
    """
    _require_win32()
    try:
        state = win32serviceutil.QueryServiceStatus(service_name)[1]
    except pywintypes.error as e:
        if e.winerror == ERROR_SERVICE_DOES_NOT_EXIST:
            return ServiceStatus.NOT_FOUND
        logging.error(f"Error querying service {service_name}: {e.strerror}")
        raise ServiceControlError(f"Cannot query service {service_name}: {e.strerror}")

    if state == win32service.SERVICE_RUNNING:
        return ServiceStatus.RUNNING
    if state == win32service.SERVICE_STOPPED:
        return ServiceStatus.STOPPED
    return ServiceStatus.PENDING


def enable_service(service_name):
    """Set the service start type to automatic."""
    result = run_clean_subprocess(['sc', 'config', service_name, 'start=', 'auto'], check=False)
    if result is None or result.returncode != 0:
        logging.warning(f"Could not set start type of {service_name} to automatic")
        return False
    logging.info(f"Set start type of {service_name} to automatic")
    return True


def start_service(service_name):
    """Start the service. Returns True if the start request was accepted."""
    _require_win32()
    try:
        win32serviceutil.StartService(service_name)
        logging.info(f"Start requested for service {service_name}")
        return True
    except pywintypes.error as e:
        if e.winerror == ERROR_SERVICE_ALREADY_RUNNING:
            return True
        logging.error(f"Failed to start service {service_name}: {e.strerror}")
        return False


def stop_service(service_name):
    """Stop the service. Returns True if the service is stopped or was not running."""
    _require_win32()
    try:
        win32serviceutil.StopService(service_name)
        logging.info(f"Stop requested for service {service_name}")
        return True
    except pywintypes.error as e:
        if e.winerror in (ERROR_SERVICE_NOT_ACTIVE, ERROR_SERVICE_DOES_NOT_EXIST):
            return True
        logging.error(f"Failed to stop service {service_name}: {e.strerror}")
        return False


def wait_for_status(service_name, wanted, timeout=30, interval=3):
    """
    Poll the service until it reaches the wanted status or the timeout expires.

    Returns the last observed status.
    """
    status = query_service_status(service_name)
    waited = 0
    while status != wanted and waited < timeout:
        time.sleep(interval)
        waited += interval
        status = query_service_status(service_name)
        logging.debug(f"Service {service_name} is {status.value} after {waited}s")
    return status


def delete_service(service_name):
    """Remove the service registration."""
    result = run_clean_subprocess(['sc', 'delete', service_name], check=False)
    if result is None or result.returncode != 0:
        logging.warning(f"Could not delete service {service_name}")
        return False
    logging.info(f"Removed Windows service: {service_name}")
    return True


def kill_agent_processes():
    """Force-terminate any leftover ScreenConnect client processes."""
    for image in AGENT_PROCESSES:
        result = run_clean_subprocess(['taskkill', '/f', '/im', image], check=False)
        if result is not None and result.returncode == 0:
            logging.info(f"Killed process {image}")
