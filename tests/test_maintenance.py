from __future__ import annotations

from datetime import date

import pytest

import maintenance
import service_utils
from conftest import SERVICE_NAME, SESSION_GUID, TODAY, make_program
from installer import InstallerError
from service_utils import ServiceStatus


def test_running_and_current_service_needs_no_action(host, config, reporter) -> None:
    result = maintenance.run_maintenance(config, reporter, today=TODAY)

    assert result.success is True
    assert result.exit_code == 0
    assert result.actions == []
    assert host.calls == []
    assert reporter.successes and not reporter.failures
    assert "Actions: none" in reporter.diagnostics


def test_missing_service_is_installed(host, config, reporter) -> None:
    host.status = ServiceStatus.NOT_FOUND
    host.program = None

    result = maintenance.run_maintenance(config, reporter, today=TODAY)

    assert host.calls == ["install"]
    assert result.status == ServiceStatus.RUNNING
    assert result.exit_code == 0


def test_stopped_service_is_enabled_and_started_before_reinstall(host, config, reporter) -> None:
    host.status = ServiceStatus.STOPPED

    result = maintenance.run_maintenance(config, reporter, today=TODAY)

    assert host.calls == ["enable", "start"]
    assert result.actions == ["start"]
    assert result.exit_code == 0


def test_stopped_service_that_will_not_start_is_reinstalled(host, config, reporter) -> None:
    host.status = ServiceStatus.STOPPED
    host.start_works = False
    host.install_outcomes = [(ServiceStatus.RUNNING, make_program())]

    result = maintenance.run_maintenance(config, reporter, today=TODAY)

    assert host.calls == ["enable", "start", "install"]
    assert result.exit_code == 0


def test_exhausted_repair_ladder_fails_the_run(host, config, reporter) -> None:
    host.status = ServiceStatus.STOPPED
    host.start_works = False
    host.install_outcomes = [
        (ServiceStatus.STOPPED, make_program()),
        (ServiceStatus.STOPPED, make_program()),
    ]

    result = maintenance.run_maintenance(config, reporter, today=TODAY)

    assert host.calls.index("start") < host.calls.index("install")
    assert host.calls.index("install") < host.calls.index("force_remove")
    assert host.calls[-3:] == ["install", "enable", "start"]
    assert result.status == ServiceStatus.STOPPED
    assert result.success is False
    assert result.exit_code == 1
    assert reporter.failures == [f"{SERVICE_NAME} is Stopped"]


def test_failed_installer_escalates_to_clean_reinstall(host, config, reporter) -> None:
    host.status = ServiceStatus.NOT_FOUND
    host.program = None
    host.install_outcomes = [InstallerError("download failed"), (ServiceStatus.RUNNING, make_program())]

    result = maintenance.run_maintenance(config, reporter, today=TODAY)

    assert host.calls == ["install", "force_remove", "install"]
    assert result.exit_code == 0


def test_os_error_during_install_escalates_to_clean_reinstall(host, config, reporter) -> None:
    host.status = ServiceStatus.NOT_FOUND
    host.program = None
    host.install_outcomes = [PermissionError(13, "Access is denied"), (ServiceStatus.RUNNING, make_program())]

    result = maintenance.run_maintenance(config, reporter, today=TODAY)

    assert host.calls == ["install", "force_remove", "install"]
    assert result.exit_code == 0
    assert reporter.diagnostics
    assert reporter.successes and not reporter.failures


def test_pending_service_is_started_before_reinstall(host, config, reporter) -> None:
    host.status = ServiceStatus.PENDING
    host.start_works = False

    result = maintenance.run_maintenance(config, reporter, today=TODAY)

    assert host.calls == ["enable", "start", "install"]
    assert host.calls.index("start") < host.calls.index("install")
    assert result.actions == ["start", "install"]
    assert result.exit_code == 0


def test_repeated_start_attempts_are_listed_once(host, config, reporter) -> None:
    host.status = ServiceStatus.STOPPED
    host.start_works = False
    host.install_outcomes = [
        (ServiceStatus.STOPPED, make_program()),
        (ServiceStatus.RUNNING, make_program()),
    ]

    result = maintenance.run_maintenance(config, reporter, today=TODAY)

    assert host.calls == ["enable", "start", "install", "enable", "start", "force_remove", "install"]
    assert result.actions == ["start", "install", "force-remove", "install"]
    assert result.actions.count("start") == 1
    assert "repaired: start, install, force-remove, install" in reporter.successes[0]


def test_old_install_is_updated(host, config, reporter) -> None:
    host.program = make_program(installed=date(2025, 1, 2))

    result = maintenance.run_maintenance(config, reporter, today=TODAY)

    assert host.calls == ["install"]
    assert result.actions == ["update", "install"]
    assert result.install_date == date(2026, 1, 1)
    assert result.exit_code == 0


def test_version_below_floor_escalates_to_forced_removal(host, config, reporter) -> None:
    config["min_version"] = "24.2"
    host.program = make_program(version="23.9.8.8811")
    host.install_outcomes = [
        (ServiceStatus.RUNNING, make_program(version="23.9.8.8811", installed=TODAY)),
        (ServiceStatus.RUNNING, make_program(version="24.2.1.9000", installed=TODAY)),
    ]

    result = maintenance.run_maintenance(config, reporter, today=TODAY)

    assert host.calls == ["install", "force_remove", "install"]
    assert result.version == "24.2.1.9000"
    assert result.exit_code == 0


def test_install_still_stale_after_escalation_fails(host, config, reporter) -> None:
    config["min_version"] = "24.2"
    host.program = make_program(version="23.9.8.8811")
    host.install_outcomes = [
        (ServiceStatus.RUNNING, make_program(version="23.9.8.8811", installed=TODAY)),
        (ServiceStatus.RUNNING, make_program(version="23.9.8.8811", installed=TODAY)),
    ]

    result = maintenance.run_maintenance(config, reporter, today=TODAY)

    assert result.status == ServiceStatus.RUNNING
    assert result.exit_code == 1
    assert "below 24.2" in reporter.failures[0]


def test_check_only_reports_without_repairing(host, config, reporter) -> None:
    config["check_only"] = True
    host.status = ServiceStatus.STOPPED

    result = maintenance.run_maintenance(config, reporter, today=TODAY)

    assert host.calls == []
    assert result.exit_code == 1
    assert reporter.failures == [f"{SERVICE_NAME} is Stopped"]


def test_force_reinstall_removes_before_installing(host, config, reporter) -> None:
    config["force_reinstall"] = True

    result = maintenance.run_maintenance(config, reporter, today=TODAY)

    assert host.calls[:2] == ["force_remove", "install"]
    assert result.actions[:2] == ["force-remove", "install"]
    assert result.exit_code == 0


def test_join_url_is_published_when_field_configured(host, config, reporter) -> None:
    config["url_field"] = "Custom5"

    result = maintenance.run_maintenance(config, reporter, today=TODAY)

    expected = f"https://sc.example.com/Host#Access/All%20Machines//{SESSION_GUID}/Join"
    assert result.join_url == expected
    assert reporter.fields == {"Custom5": expected}


def test_join_url_skipped_when_guid_missing(host, config, reporter) -> None:
    config["url_field"] = "Custom5"
    host.image_path = '"C:\\ScreenConnect.ClientService.exe"'

    result = maintenance.run_maintenance(config, reporter, today=TODAY)

    assert result.join_url is None
    assert reporter.fields == {}
    assert result.exit_code == 0


def test_stale_reason_ignores_missing_install_date(config) -> None:
    program = make_program(installed=None)

    assert maintenance.stale_reason(program, config, today=TODAY) is None


def test_stale_reason_age_check_can_be_disabled(config) -> None:
    config["max_age_days"] = 0
    program = make_program(installed=date(2019, 5, 1))

    assert maintenance.stale_reason(program, config, today=TODAY) is None


def test_stale_reason_for_unregistered_program(config) -> None:
    assert "not registered" in maintenance.stale_reason(None, config, today=TODAY)


def test_parse_args_maps_options_to_config_keys() -> None:
    path, overrides, verbose = maintenance.parse_args(
        ["--config", "c.json", "--server", "sc.example.com", "--max-age-days", "30", "--check-only", "--verbose"]
    )

    assert path == "c.json"
    assert overrides == {"server_domain": "sc.example.com", "max_age_days": "30", "check_only": True}
    assert verbose is True


@pytest.mark.parametrize("argv", [["--server"], ["--bogus"]])
def test_parse_args_rejects_bad_arguments(argv) -> None:
    with pytest.raises(maintenance.ConfigError):
        maintenance.parse_args(argv)


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    for name in ("CS_PROFILE_NAME", "CS_CC_HOST", "SyncroModule"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(maintenance, "setup_logging", lambda log_dir, verbose=False: None)
    monkeypatch.setattr(maintenance, "load_config", _load_without_default_file(tmp_path))


def _load_without_default_file(tmp_path):
    from config import load_config

    def _load(path=None, env=None, overrides=None):
        return load_config(path or _empty_config(tmp_path), env={}, overrides=overrides)

    return _load


def _empty_config(tmp_path):
    path = tmp_path / "maintenance_config.json"
    path.write_text("{}")
    return str(path)


def test_main_exits_2_on_configuration_error(clean_env, capsys) -> None:
    assert maintenance.main(["--server", "sc.example.com"]) == 2
    assert "service_name" in capsys.readouterr().err


def test_main_check_only_reports_to_console(clean_env, host, tmp_path, capsys) -> None:
    argv = [
        "--service-name", SERVICE_NAME,
        "--server", "sc.example.com",
        "--max-age-days", "0",
        "--log-dir", str(tmp_path),
        "--check-only",
    ]

    assert maintenance.main(argv) == 0
    assert capsys.readouterr().out.startswith(f"OK: {SERVICE_NAME} is running")


def test_main_requires_admin_to_repair(clean_env, host, tmp_path, monkeypatch, capsys) -> None:
    monkeypatch.setattr(service_utils, "is_admin", lambda: False)
    argv = ["--service-name", SERVICE_NAME, "--server", "sc.example.com", "--log-dir", str(tmp_path)]

    assert maintenance.main(argv) == 1
    assert "administrator" in capsys.readouterr().out
    assert host.calls == []


def test_main_exits_2_when_data_directory_is_unknown(clean_env, monkeypatch, capsys) -> None:
    import config as config_module

    monkeypatch.setattr(config_module.platform, "system", lambda: "Plan9")

    assert maintenance.main(["--service-name", SERVICE_NAME, "--server", "sc.example.com"]) == 2
    assert "Unsupported OS: Plan9" in capsys.readouterr().err
