"""
ScreenConnect Maintenance
Copyright (c) 2025 Kiefer Networks

Checks that the ScreenConnect client service is installed, running and
current, repairs it when it is not, and reports the outcome to the RMM
platform that launched the run.
"""

import os
import sys
import socket
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional

import installer
import registry_utils
import rmm
import service_utils
from config import ConfigError, get_install_dir, load_config, validate_config
from installer import InstallerError
from service_utils import MaintenanceError, ServiceStatus

JOIN_URL_TEMPLATE = "https://{domain}/Host#Access/All%20Machines//{guid}/Join"

USAGE = """ScreenConnect Maintenance

Usage: screenconnect-maintenance [options]

Options:
  --config <path>            JSON configuration file
  --service-name <name>      ScreenConnect client service name
  --server <domain>          ScreenConnect server host name
  --company <name>           Company name passed to the installer
  --friendly-name <name>     Session name passed to the installer
  --max-age-days <days>      Reinstall when the install is older than this (0 disables)
  --min-version <version>    Reinstall when the installed version is lower than this
  --url-field <field>        RMM custom field that receives the join URL
  --alert-category <name>    Syncro alert category
  --force-reinstall          Remove and reinstall the client unconditionally
  --check-only               Report the current state without repairing
  --log-dir <path>           Log directory
  --verbose                  Debug logging
  --help                     Show this help
"""

VALUE_OPTIONS = {
    '--service-name': 'service_name',
    '--server': 'server_domain',
    '--company': 'company_name',
    '--friendly-name': 'friendly_name',
    '--max-age-days': 'max_age_days',
    '--min-version': 'min_version',
    '--url-field': 'url_field',
    '--alert-category': 'alert_category',
    '--log-dir': 'log_dir',
}
FLAG_OPTIONS = {
    '--force-reinstall': 'force_reinstall',
    '--check-only': 'check_only',
}


@dataclass
class RunResult:
    """Outcome of a single maintenance pass."""
    status: ServiceStatus = ServiceStatus.NOT_FOUND
    version: str = ""
    install_date: Optional[date] = None
    stale_reason: Optional[str] = None
    actions: List[str] = field(default_factory=list)
    join_url: Optional[str] = None
    success: bool = False
    message: str = ""

    @property
    def exit_code(self):
        return 0 if self.success else 1

    def diagnostic_lines(self):
        lines = [
            f"Service status: {self.status.value}",
            f"Installed version: {self.version or 'unknown'}",
            f"Install date: {self.install_date.isoformat() if self.install_date else 'unknown'}",
            f"Actions: {', '.join(self.actions) if self.actions else 'none'}",
        ]
        if self.stale_reason:
            lines.append(f"Stale: {self.stale_reason}")
        if self.join_url:
            lines.append(f"Join URL: {self.join_url}")
        return lines


def setup_logging(log_dir, verbose=False):
    log_filename = os.path.join(log_dir, 'maintenance.log')
    level = logging.DEBUG if verbose else logging.INFO
    fmt = '[%(asctime)s] %(levelname)s: %(message)s'
    datefmt = '%Y-%m-%d %H:%M:%S'

    try:
        os.makedirs(log_dir, exist_ok=True)
        logging.basicConfig(filename=log_filename, level=level, format=fmt, datefmt=datefmt, force=True)
        logging.info("Logging initialized successfully.")
    except OSError as e:
        print(f"Failed to initialize logging to {log_filename}: {e}", file=sys.stderr)
        # RMM output still goes to stdout
        logging.basicConfig(stream=sys.stderr, level=level, format=fmt, datefmt=datefmt, force=True)
        logging.warning("Logging initialized to stderr due to file error.")


def _wait_running(config):
    return service_utils.wait_for_status(
        config['service_name'],
        ServiceStatus.RUNNING,
        timeout=config['start_wait_seconds'],
        interval=config['poll_interval_seconds'],
    )


def _start_and_wait(config, actions):
    name = config['service_name']
    status = service_utils.query_service_status(name)
    if status == ServiceStatus.PENDING:
        status = _wait_running(config)
    if status in (ServiceStatus.RUNNING, ServiceStatus.NOT_FOUND):
        return status
    if 'start' not in actions:
        actions.append('start')
    service_utils.enable_service(name)
    service_utils.start_service(name)
    return _wait_running(config)


def _install(config, actions, force=False):
    """Run one install rung. Returns False if the installer itself failed."""
    if force:
        actions.append('force-remove')
        installer.force_remove_agent(config)
    actions.append('install')
    try:
        installer.install_agent(config)
    except (InstallerError, OSError) as e:
        logging.error(f"Install failed: {e}")
        return False
    return True


def ensure_running(config, actions):
    """
    Bring the client service to Running.

    Escalation: enable and start an existing service, then reinstall over it,
    then force-remove and install from scratch. A missing service goes
    straight to install.

    Returns:
        ServiceStatus: The status after the last rung attempted.
    """
    name = config['service_name']
    status = service_utils.query_service_status(name)
    logging.info(f"Service {name} is {status.value}")
    if status == ServiceStatus.RUNNING:
        return status

    if status != ServiceStatus.NOT_FOUND:
        status = _start_and_wait(config, actions)
        if status == ServiceStatus.RUNNING:
            logging.info(f"Service {name} started")
            return status
        logging.warning(f"Service {name} did not start ({status.value}), reinstalling")

    if _install(config, actions):
        status = _start_and_wait(config, actions)
        if status == ServiceStatus.RUNNING:
            return status
        logging.warning(f"Service {name} is {status.value} after install, forcing a clean reinstall")

    if _install(config, actions, force=True):
        status = _start_and_wait(config, actions)
    else:
        status = service_utils.query_service_status(name)
    if status != ServiceStatus.RUNNING:
        logging.error(f"Service {name} is {status.value} after all repair attempts")
    return status


def lookup_program(config):
    try:
        return registry_utils.find_installed_program(config['service_name'])
    except RuntimeError as e:
        logging.error(f"Cannot read installed programs: {e}")
        return None


def stale_reason(program, config, today=None):
    """
    Explain why an install needs updating, or return None if it is current.

    An install with no recorded date is not considered stale by age.
    """
    today = today or date.today()
    if program is None:
        return "client is not registered as an installed program"

    max_age = config['max_age_days']
    if max_age and program.install_date is not None:
        age = (today - program.install_date).days
        if age > max_age:
            return f"installed {age} days ago (limit {max_age})"
    elif max_age:
        logging.warning(f"No install date recorded for {program.display_name}, skipping age check")

    floor = config['min_version']
    if floor and registry_utils.version_below(program.version, floor):
        return f"version {program.version or 'unknown'} is below {floor}"
    return None


def ensure_current(config, actions, today=None):
    """
    Reinstall the client while it is stale.

    The first attempt installs over the existing client; if that does not
    clear staleness the client is force-removed and installed again.

    Returns:
        tuple: (InstalledProgram or None, remaining stale reason or None)
    """
    program = lookup_program(config)
    reason = stale_reason(program, config, today)
    if reason is None:
        return program, None

    for force in (False, True):
        logging.info(f"Client needs updating: {reason}")
        actions.append('update')
        if _install(config, actions, force=force):
            _start_and_wait(config, actions)
        program = lookup_program(config)
        reason = stale_reason(program, config, today)
        if reason is None:
            logging.info(f"Client updated to version {program.version}")
            return program, None

    logging.error(f"Client is still stale after update attempts: {reason}")
    return program, reason


def build_join_url(server_domain, session_guid):
    return JOIN_URL_TEMPLATE.format(domain=server_domain, guid=session_guid)


def publish_join_url(config, reporter):
    """Write the host join URL for this machine into the configured RMM field."""
    field_name = config['url_field']
    if not field_name:
        return None
    try:
        image_path = registry_utils.get_service_image_path(config['service_name'])
    except RuntimeError as e:
        logging.warning(f"Cannot read service command line: {e}")
        return None
    guid = registry_utils.extract_session_guid(image_path)
    if not guid:
        logging.warning(f"No session GUID found in command line of {config['service_name']}")
        return None
    url = build_join_url(config['server_domain'], guid)
    if reporter.set_custom_field(field_name, url):
        logging.info(f"Published join URL to {field_name}")
    return url


def _fill_result(result, program, reason):
    result.stale_reason = reason
    if program is not None:
        result.version = program.version
        result.install_date = program.install_date


def run_maintenance(config, reporter, today=None):
    """
    Run one check-and-repair pass and report it.

    Returns:
        RunResult: success is True iff the service ends up Running and current.
    """
    result = RunResult()
    name = config['service_name']

    if config['check_only']:
        result.status = service_utils.query_service_status(name)
        program = lookup_program(config)
        _fill_result(result, program, stale_reason(program, config, today))
    else:
        if config['force_reinstall']:
            logging.info("Forced reinstall requested")
            _install(config, result.actions, force=True)
        result.status = ensure_running(config, result.actions)
        if result.status == ServiceStatus.RUNNING:
            program, reason = ensure_current(config, result.actions, today)
            _fill_result(result, program, reason)
            result.status = service_utils.query_service_status(name)
        else:
            program = lookup_program(config)
            _fill_result(result, program, stale_reason(program, config, today))

    if result.status != ServiceStatus.RUNNING:
        result.message = f"{name} is {result.status.value}"
    elif result.stale_reason:
        result.message = f"{name} is out of date: {result.stale_reason}"
    else:
        result.success = True
        result.message = f"{name} is running, version {result.version or 'unknown'}"
        if result.actions:
            result.message += f" (repaired: {', '.join(result.actions)})"
        result.join_url = publish_join_url(config, reporter)

    reporter.diagnostic(result.diagnostic_lines())
    if result.success:
        reporter.report_success(result.message)
    else:
        reporter.report_failure(result.message)
    return result


def parse_args(argv):
    """
    Parse command-line arguments.

    Returns:
        tuple: (config path or None, overrides dict, verbose flag)

    Raises:
        ConfigError: On an unknown option or a missing option value.
    """
    overrides = {}
    config_path = None
    verbose = False
    args = list(argv)
    i = 0
    while i < len(args):
        arg = args[i]
        if arg == '--config' or arg in VALUE_OPTIONS:
            if i + 1 >= len(args):
                raise ConfigError(f"Missing value for {arg}")
            if arg == '--config':
                config_path = args[i + 1]
            else:
                overrides[VALUE_OPTIONS[arg]] = args[i + 1]
            i += 2
            continue
        if arg in FLAG_OPTIONS:
            overrides[FLAG_OPTIONS[arg]] = True
        elif arg == '--verbose':
            verbose = True
        else:
            raise ConfigError(f"Unknown argument: {arg}")
        i += 1
    return config_path, overrides, verbose


def resolve_defaults(config, rmm_platform, env=None):
    """Fill company and friendly name from the RMM profile and host name."""
    resolved = dict(config)
    if not resolved['company_name']:
        resolved['company_name'] = rmm.get_profile_name(rmm_platform, env)
    if not resolved['friendly_name']:
        resolved['friendly_name'] = socket.gethostname()
    if not resolved['log_dir']:
        resolved['log_dir'] = os.path.join(get_install_dir(), 'log')
    return resolved


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    if '--help' in argv or '-h' in argv:
        print(USAGE)
        return 0

    rmm_platform = rmm.detect_platform()
    try:
        config_path, overrides, verbose = parse_args(argv)
        config = load_config(config_path, overrides=overrides)
        config = validate_config(resolve_defaults(config, rmm_platform), rmm_platform)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        print(USAGE, file=sys.stderr)
        return 2

    setup_logging(config['log_dir'], verbose)
    logging.info(f"Starting maintenance of {config['service_name']} (platform: {rmm_platform})")
    reporter = rmm.get_reporter(rmm_platform, config)

    if not config['check_only'] and not service_utils.is_admin():
        reporter.report_failure("Maintenance requires administrator privileges")
        return 1

    try:
        result = run_maintenance(config, reporter)
    except MaintenanceError as e:
        logging.exception("Maintenance run failed")
        reporter.report_failure(f"Maintenance failed: {e}")
        return 1
    except Exception as e:
        logging.exception("Unexpected error during maintenance")
        reporter.report_failure(f"Unexpected error: {e}")
        return 1

    logging.info(f"Maintenance finished with exit code {result.exit_code}")
    return result.exit_code


if __name__ == '__main__':
    sys.exit(main())
