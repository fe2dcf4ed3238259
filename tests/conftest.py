from __future__ import annotations

from datetime import date

import pytest

import installer
import registry_utils
import service_utils
from config import DEFAULT_CONFIG
from registry_utils import InstalledProgram
from service_utils import ServiceStatus

SERVICE_NAME = "ScreenConnect Client (0123456789abcdef)"
SESSION_GUID = "3f2504e0-4f89-11d3-9a0c-0305e82c3301"
TODAY = date(2026, 1, 15)


def make_program(version: str = "24.1.0.1000", installed: date | None = date(2026, 1, 1)) -> InstalledProgram:
    return InstalledProgram(
        product_code="{B1E1B2F3-1A2B-4C3D-8E9F-0123456789AB}",
        display_name=SERVICE_NAME,
        version=version,
        install_date=installed,
        install_location=r"C:\Program Files (x86)\ScreenConnect Client (0123456789abcdef)",
    )


class FakeHost:
    """In-memory stand-in for the service manager, registry and installer."""

    def __init__(self) -> None:
        self.status = ServiceStatus.RUNNING
        self.program: InstalledProgram | None = make_program()
        self.start_works = True
        self.install_outcomes: list = []
        self.image_path = (
            '"C:\\Program Files (x86)\\ScreenConnect Client (0123456789abcdef)\\ScreenConnect.ClientService.exe" '
            f'"?e=Access&y=Guest&h=sc.example.com&p=8041&s={SESSION_GUID}&k=BgIAAACkAABSU0Ex&t=&c=Acme"'
        )
        self.calls: list[str] = []

    def query(self, name: str) -> ServiceStatus:
        return self.status

    def wait(self, name, wanted, timeout=30, interval=3) -> ServiceStatus:
        return self.status

    def enable(self, name: str) -> bool:
        self.calls.append("enable")
        return True

    def start(self, name: str) -> bool:
        self.calls.append("start")
        if self.start_works and self.status != ServiceStatus.NOT_FOUND:
            self.status = ServiceStatus.RUNNING
        return self.start_works

    def install(self, config: dict) -> None:
        self.calls.append("install")
        outcome = self.install_outcomes.pop(0) if self.install_outcomes else (ServiceStatus.RUNNING, make_program())
        if isinstance(outcome, Exception):
            raise outcome
        self.status, self.program = outcome

    def force_remove(self, config: dict) -> None:
        self.calls.append("force_remove")
        self.status = ServiceStatus.NOT_FOUND
        self.program = None

    def find_program(self, display_name: str) -> InstalledProgram | None:
        return self.program

    def get_image_path(self, service_name: str) -> str:
        return self.image_path


class RecordingReporter:
    platform = "test"

    def __init__(self) -> None:
        self.successes: list[str] = []
        self.failures: list[str] = []
        self.diagnostics: list[str] = []
        self.fields: dict[str, str] = {}

    def report_success(self, message: str) -> None:
        self.successes.append(message)

    def report_failure(self, message: str) -> None:
        self.failures.append(message)

    def diagnostic(self, lines) -> None:
        self.diagnostics.extend(lines)

    def set_custom_field(self, name: str, value: str) -> bool:
        self.fields[name] = value
        return True


@pytest.fixture
def host(monkeypatch: pytest.MonkeyPatch) -> FakeHost:
    fake = FakeHost()
    monkeypatch.setattr(service_utils, "query_service_status", fake.query)
    monkeypatch.setattr(service_utils, "wait_for_status", fake.wait)
    monkeypatch.setattr(service_utils, "enable_service", fake.enable)
    monkeypatch.setattr(service_utils, "start_service", fake.start)
    monkeypatch.setattr(installer, "install_agent", fake.install)
    monkeypatch.setattr(installer, "force_remove_agent", fake.force_remove)
    monkeypatch.setattr(registry_utils, "find_installed_program", fake.find_program)
    monkeypatch.setattr(registry_utils, "get_service_image_path", fake.get_image_path)
    return fake


@pytest.fixture
def reporter() -> RecordingReporter:
    return RecordingReporter()


@pytest.fixture
def config() -> dict:
    cfg = dict(DEFAULT_CONFIG)
    cfg.update(
        service_name=SERVICE_NAME,
        server_domain="sc.example.com",
        company_name="Acme",
        friendly_name="WS-001",
        max_age_days=180,
        start_wait_seconds=0,
        poll_interval_seconds=1,
    )
    return cfg
