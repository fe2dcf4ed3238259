"""
ScreenConnect Maintenance - Installer
Copyright (c) 2025 Kiefer Networks

Downloads the ScreenConnect client MSI from the server and runs Windows
Installer against it.
"""

import os
import shutil
import logging
import tempfile
import requests

import registry_utils
import service_utils
from service_utils import MaintenanceError, run_clean_subprocess

INSTALLER_PATH = '/Bin/ScreenConnect.ClientSetup.msi'
CUSTOM_PROPERTY_SLOTS = 8
DOWNLOAD_TIMEOUT = 120
MSI_SUCCESS_CODES = (0, 1641, 3010)
CLIENT_SERVICE_EXE = 'ScreenConnect.ClientService.exe'


class InstallerError(MaintenanceError):
    """Raised when the client installer cannot be downloaded or run."""
    pass


def build_installer_params(company, friendly_name):
    """Query parameters for a guest access client installer."""
    custom = [company or ''] + [''] * (CUSTOM_PROPERTY_SLOTS - 1)
    return [
        ('e', 'Access'),
        ('y', 'Guest'),
        ('t', friendly_name or ''),
    ] + [('c', value) for value in custom]


def build_installer_url(server_domain, company, friendly_name):
    """Full, URL-encoded installer URL. Mainly for logging."""
    request = requests.Request(
        'GET',
        f"https://{server_domain}{INSTALLER_PATH}",
        params=build_installer_params(company, friendly_name),
    ).prepare()
    return request.url


def download_installer(server_domain, company, friendly_name, dest_dir=None):
    """
    Download the client MSI.

    Args:
        server_domain: ScreenConnect server host name.
        company: Company token (first custom property).
        friendly_name: Session name shown in the host console.
        dest_dir: Directory for the download. Defaults to the temp directory.

    Returns:
        str: Path to the downloaded MSI.

    Raises:
        InstallerError: If the download fails, returns an empty body or
            cannot be written to disk.
    """
    url = f"https://{server_domain}{INSTALLER_PATH}"
    params = build_installer_params(company, friendly_name)
    try:
        fd, msi_path = tempfile.mkstemp(prefix='ScreenConnect.ClientSetup.', suffix='.msi', dir=dest_dir)
        os.close(fd)
    except OSError as e:
        logging.error(f"Cannot create installer file in {dest_dir or tempfile.gettempdir()}: {e}")
        raise InstallerError(f"Cannot create installer file: {e}")

    logging.info(f"Downloading client installer from {build_installer_url(server_domain, company, friendly_name)}")
    try:
        with requests.get(url, params=params, stream=True, timeout=DOWNLOAD_TIMEOUT) as response:
            response.raise_for_status()
            size = 0
            with open(msi_path, 'wb') as f:
                for chunk in response.iter_content(chunk_size=65536):
                    if chunk:
                        f.write(chunk)
                        size += len(chunk)
    except requests.RequestException as e:
        logging.error(f"Error downloading installer from {server_domain}: {e}")
        _remove_quietly(msi_path)
        raise InstallerError(f"Installer download failed: {e}")
    except OSError as e:
        logging.error(f"Error writing installer to {msi_path}: {e}")
        _remove_quietly(msi_path)
        raise InstallerError(f"Cannot write installer file: {e}")

    if size == 0:
        _remove_quietly(msi_path)
        raise InstallerError("Installer download returned an empty file")

    logging.info(f"Downloaded {size} bytes to {msi_path}")
    return msi_path


def _remove_quietly(path):
    try:
        os.remove(path)
    except OSError as e:
        logging.warning(f"Could not remove {path}: {e}")


def _run_msiexec(args, action):
    cmd = ['msiexec'] + args + ['/qn', '/norestart']
    result = run_clean_subprocess(cmd, check=False)
    if result is None:
        raise InstallerError(f"Could not run msiexec for {action}")
    if result.returncode not in MSI_SUCCESS_CODES:
        logging.error(f"msiexec {action} failed with exit code {result.returncode}")
        raise InstallerError(f"msiexec {action} failed with exit code {result.returncode}")
    if result.returncode != 0:
        logging.info(f"msiexec {action} succeeded, reboot pending (exit code {result.returncode})")
    return result.returncode


def run_msi_install(msi_path):
    """Install an MSI silently and wait for it to finish."""
    logging.info(f"Installing {msi_path}")
    return _run_msiexec(['/i', msi_path], 'install')


def run_msi_uninstall(product_code):
    """Uninstall an MSI product silently by product code."""
    logging.info(f"Uninstalling product {product_code}")
    return _run_msiexec(['/x', product_code], 'uninstall')


def install_agent(config):
    """Download and install the client for this machine."""
    msi_path = download_installer(config['server_domain'], config['company_name'], config['friendly_name'])
    try:
        run_msi_install(msi_path)
    finally:
        _remove_quietly(msi_path)
    logging.info("Client installation completed")


def force_remove_agent(config):
    """
    Remove every trace of the client so a clean install can follow.

    Each step is best-effort; failures are logged and the next step runs.
    """
    service_name = config['service_name']
    logging.info(f"Force-removing {service_name}")

    try:
        service_utils.stop_service(service_name)
    except MaintenanceError as e:
        logging.warning(f"Could not stop {service_name}: {e}")
    service_utils.kill_agent_processes()

    program = None
    try:
        program = registry_utils.find_installed_program(service_name)
    except RuntimeError as e:
        logging.warning(f"Could not look up installed program: {e}")

    if program and registry_utils.GUID_PATTERN.match(program.product_code):
        try:
            run_msi_uninstall(program.product_code)
        except InstallerError as e:
            logging.warning(f"MSI uninstall failed, continuing with manual removal: {e}")

    service_utils.delete_service(service_name)

    for directory in _install_dirs(service_name, program):
        if not os.path.isdir(directory):
            continue
        if not is_client_dir(directory, service_name):
            logging.warning(f"Not removing {directory}: it does not look like a ScreenConnect client folder")
            continue
        try:
            shutil.rmtree(directory)
            logging.info(f"Removed installation directory: {directory}")
        except OSError as e:
            logging.warning(f"Could not remove {directory}: {e}")


def is_client_dir(directory, service_name):
    """
    Only a folder named after the service, or one holding the client
    service executable, may be deleted.
    """
    name = os.path.basename(os.path.normpath(directory))
    if name.strip().lower() == service_name.strip().lower():
        return True
    return os.path.isfile(os.path.join(directory, CLIENT_SERVICE_EXE))


def _install_dirs(service_name, program):
    # The client installs into a folder named after its service
    dirs = []
    if program and program.install_location:
        dirs.append(program.install_location)
    for variable in ('ProgramFiles(x86)', 'ProgramFiles'):
        root = os.environ.get(variable)
        if root:
            candidate = os.path.join(root, service_name)
            if candidate not in dirs:
                dirs.append(candidate)
    return dirs
