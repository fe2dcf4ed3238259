"""
ScreenConnect Maintenance - RMM Integration
Copyright (c) 2025 Kiefer Networks

Detects which RMM platform launched the run and reports results back to it.

Datto RMM reads result and diagnostic blocks from the component's stdout and
user-defined fields from the registry. Syncro exposes alerts and asset fields
through its PowerShell module, whose path it publishes in $env:SyncroModule.
"""

import os
import sys
import logging

import registry_utils
from service_utils import run_clean_subprocess

DATTO = 'datto'
SYNCRO = 'syncro'
CONSOLE = 'console'

DATTO_ENV_VARS = ('CS_PROFILE_NAME', 'CS_CC_HOST')
SYNCRO_ENV_VAR = 'SyncroModule'

PROFILE_ENV_VARS = {
    DATTO: 'CS_PROFILE_NAME',
    SYNCRO: 'customer_business_name',
}


def detect_platform(env=None):
    """Return 'datto', 'syncro' or 'console' for the current run."""
    env = os.environ if env is None else env
    if any(env.get(name) for name in DATTO_ENV_VARS):
        return DATTO
    if env.get(SYNCRO_ENV_VAR):
        return SYNCRO
    return CONSOLE


def get_profile_name(rmm_platform, env=None):
    """Site or customer name published by the RMM platform, or an empty string."""
    env = os.environ if env is None else env
    name = PROFILE_ENV_VARS.get(rmm_platform)
    return env.get(name, '').strip() if name else ''


def _ps_quote(value):
    return "'" + str(value).replace("'", "''") + "'"


class ConsoleReporter:
    """Reporter used when no RMM platform is detected."""

    platform = CONSOLE

    def __init__(self, stream=None):
        self.stream = stream or sys.stdout

    def _emit(self, *lines):
        for line in lines:
            print(line, file=self.stream)
        self.stream.flush()

    def report_success(self, message):
        logging.info(message)
        self._emit(f"OK: {message}")

    def report_failure(self, message):
        logging.error(message)
        self._emit(f"ERROR: {message}")

    def diagnostic(self, lines):
        for line in lines:
            logging.info(line)

    def set_custom_field(self, name, value):
        logging.info(f"No RMM platform detected, not writing {name}={value}")
        return False


class DattoReporter(ConsoleReporter):
    """Writes Datto RMM result markers to stdout."""

    platform = DATTO

    def report_success(self, message):
        logging.info(message)
        self._emit("<-Start Result->", f"STATUS={message}", "<-End Result->")

    def report_failure(self, message):
        logging.error(message)
        self._emit("<-Start Result->", f"ALERT={message}", "<-End Result->")

    def diagnostic(self, lines):
        lines = list(lines)
        if lines:
            self._emit("<-Start Diagnostic->", *lines, "<-End Diagnostic->")

    def set_custom_field(self, name, value):
        try:
            registry_utils.write_datto_custom_field(name, value)
            return True
        except (OSError, RuntimeError, ValueError) as e:
            logging.error(f"Error writing Datto custom field {name}: {e}")
            return False


class SyncroReporter(ConsoleReporter):
    """Raises and closes Syncro RMM alerts through the Syncro PowerShell module."""

    platform = SYNCRO

    def __init__(self, alert_category='ScreenConnect', stream=None):
        super().__init__(stream)
        self.alert_category = alert_category

    def _run_module_command(self, command):
        script = f"Import-Module $env:{SYNCRO_ENV_VAR} -WarningAction SilentlyContinue; {command}"
        result = run_clean_subprocess(
            ['powershell', '-NoProfile', '-ExecutionPolicy', 'Bypass', '-Command', script],
            check=False,
            timeout=120,
        )
        if result is None or result.returncode != 0:
            stderr = result.stderr.strip() if result is not None and result.stderr else 'no output'
            logging.error(f"Syncro command failed: {command}: {stderr}")
            return False
        return True

    def report_success(self, message):
        super().report_success(message)
        self._run_module_command(
            f"Close-Rmm-Alert -Category {_ps_quote(self.alert_category)} -CloseAlertTicket 'true'"
        )

    def report_failure(self, message):
        super().report_failure(message)
        self._run_module_command(
            f"Rmm-Alert -Category {_ps_quote(self.alert_category)} -Body {_ps_quote(message)}"
        )

    def diagnostic(self, lines):
        lines = list(lines)
        super().diagnostic(lines)
        if lines:
            self._emit(*lines)

    def set_custom_field(self, name, value):
        ok = self._run_module_command(f"Set-Asset-Field -Name {_ps_quote(name)} -Value {_ps_quote(value)}")
        if ok:
            logging.info(f"Wrote Syncro asset field {name}")
        return ok


def get_reporter(rmm_platform, config=None):
    """Create the reporter for a platform."""
    config = config or {}
    if rmm_platform == DATTO:
        return DattoReporter()
    if rmm_platform == SYNCRO:
        return SyncroReporter(alert_category=config.get('alert_category') or 'ScreenConnect')
    return ConsoleReporter()
