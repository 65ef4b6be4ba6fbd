"""Entry point wiring: argument parsing, settings overrides and uvicorn launch."""

from pathlib import Path
from unittest.mock import patch

from stack_orchestration import main as entry
from stack_orchestration.core.orchestrator import Role
from stack_orchestration.logging_setup import LOG_FORMAT


def test_parse_args_defaults_to_monitor():
    args = entry.parse_args([])

    assert args.role == "monitor"
    assert args.host is None and args.port is None


@patch("stack_orchestration.main.uvicorn.run")
@patch("stack_orchestration.main.StackOrchestrator")
def test_main_builds_installer(mock_orchestrator_cls, mock_run, tmp_path):
    state_path = tmp_path / "state.json"

    entry.main(["--role", "installer", "--port", "9090", "--state-path", str(state_path)])

    settings = mock_orchestrator_cls.call_args.args[0]
    assert settings.state_path == Path(state_path)
    assert mock_orchestrator_cls.call_args.kwargs["role"] == Role.INSTALLER
    assert mock_run.call_args.kwargs["port"] == 9090
    assert mock_run.call_args.kwargs["log_config"]["formatters"]["default"]["format"] == LOG_FORMAT
