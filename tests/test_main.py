"""
Brief: Tests for the airdecoy.main CLI entry point.

Inputs:
  - None

Outputs:
  - None
"""

import logging
import os
import signal

import pytest

import airdecoy.main as main_mod
from airdecoy.errors import NoEligibleInterfaces, TransportSocketError


class _FakeService:
    """Stands in for BeaconService; behaviour is set per test."""

    instances = []
    start_error = None
    wait_result = 0
    send_signal = None

    def __init__(self, config):
        self.config = config
        self.started = False
        self.shutdown_calls = 0
        _FakeService.instances.append(self)

    def start(self):
        if _FakeService.start_error is not None:
            raise _FakeService.start_error
        self.started = True

    def wait(self, stop_event):
        if _FakeService.send_signal is not None:
            os.kill(os.getpid(), _FakeService.send_signal)
            return 0 if stop_event.wait(2.0) else 3
        return _FakeService.wait_result

    def shutdown(self):
        self.shutdown_calls += 1


@pytest.fixture
def fake_service(monkeypatch):
    _FakeService.instances = []
    _FakeService.start_error = None
    _FakeService.wait_result = 0
    _FakeService.send_signal = None
    monkeypatch.setattr(main_mod, "BeaconService", _FakeService)
    return _FakeService


def test_missing_instance_is_a_config_error(fake_service, capsys):
    """
    Brief: Without an instance name the CLI exits 1 before starting anything.

    Inputs:
      - fake_service: patched BeaconService
      - capsys: pytest capture fixture

    Outputs:
      - None
    """
    assert main_mod.main(["--port", "7000"]) == 1
    assert fake_service.instances == []
    assert "instance" in capsys.readouterr().err


def test_unreadable_config_file(fake_service, tmp_path):
    """
    Brief: A missing YAML file exits 1.

    Inputs:
      - fake_service: patched BeaconService
      - tmp_path: pytest temporary directory

    Outputs:
      - None
    """
    assert main_mod.main(["--config", str(tmp_path / "nope.yaml")]) == 1
    assert fake_service.instances == []


def test_invalid_yaml(fake_service, tmp_path):
    """
    Brief: Invalid YAML exits 1.

    Inputs:
      - fake_service: patched BeaconService
      - tmp_path: pytest temporary directory

    Outputs:
      - None
    """
    path = tmp_path / "bad.yaml"
    path.write_text("service: [unclosed\n")
    assert main_mod.main(["--config", str(path)]) == 1


@pytest.mark.parametrize(
    "error",
    [NoEligibleInterfaces("no usable interface"), ValueError("bad hostname")],
)
def test_startup_failure_exits_one_and_cleans_up(fake_service, error):
    """
    Brief: Startup errors exit 1 and still run shutdown().

    Inputs:
      - fake_service: patched BeaconService
      - error: exception raised by start()

    Outputs:
      - None
    """
    fake_service.start_error = error
    assert main_mod.main(["--instance", "Den", "--port", "7000"]) == 1
    [svc] = fake_service.instances
    assert svc.shutdown_calls == 1


def test_clean_run_exits_zero(fake_service, tmp_path):
    """
    Brief: A config file plus CLI overrides reaches the service; exit 0.

    Inputs:
      - fake_service: patched BeaconService
      - tmp_path: pytest temporary directory

    Outputs:
      - None
    """
    path = tmp_path / "cfg.yaml"
    path.write_text(
        "service:\n  instance: From-File\n  port: 7000\nlogging:\n  stderr: false\n"
    )
    rc = main_mod.main(
        ["--config", str(path), "--instance", "From-CLI", "--no-probe", "--log-level", "debug"]
    )
    assert rc == 0
    [svc] = fake_service.instances
    assert svc.started and svc.shutdown_calls == 1
    assert svc.config.service.instance == "From-CLI"
    assert svc.config.service.port == 7000
    assert svc.config.mdns.probe is False
    assert logging.getLogger().level == logging.DEBUG


def test_fatal_transport_loss_exits_one(fake_service):
    """
    Brief: A non-zero wait() result becomes the exit status.

    Inputs:
      - fake_service: patched BeaconService

    Outputs:
      - None
    """
    fake_service.wait_result = 1
    assert main_mod.main(["--instance", "Den", "--port", "7000"]) == 1
    assert fake_service.instances[0].shutdown_calls == 1


@pytest.mark.skipif(not hasattr(signal, "SIGTERM"), reason="needs SIGTERM")
def test_sigterm_requests_clean_shutdown(fake_service):
    """
    Brief: SIGTERM sets the stop event; exit 0 and handlers are restored.

    Inputs:
      - fake_service: patched BeaconService

    Outputs:
      - None
    """
    before = signal.getsignal(signal.SIGTERM)
    fake_service.send_signal = signal.SIGTERM
    assert main_mod.main(["--instance", "Den", "--port", "7000"]) == 0
    assert fake_service.instances[0].shutdown_calls == 1
    assert signal.getsignal(signal.SIGTERM) == before


def test_arg_parser_repeats_interface():
    """
    Brief: --interface may be given more than once.

    Inputs:
      - None

    Outputs:
      - None
    """
    args = main_mod.build_arg_parser().parse_args(
        ["--interface", "eth0", "--interface", "wlan0", "--type", "_raop._tcp"]
    )
    assert args.interfaces == ["eth0", "wlan0"]
    assert args.service_type == "_raop._tcp"
    assert args.no_probe is False


def test_transport_error_is_a_beacon_error():
    """
    Brief: Transport loss belongs to the startup failure family caught by main().

    Inputs:
      - None

    Outputs:
      - None
    """
    assert issubclass(TransportSocketError, main_mod.BeaconError)
