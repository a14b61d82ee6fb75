import subprocess

from manageability import errors
from manageability.model import Operation


def test_agent_errors_are_distinct():
    excs = [errors.ConfigError, errors.DMError, errors.ActivationSkipped]
    instances = [exc("message") for exc in excs]
    assert all(isinstance(inst, errors.AgentError) for inst in instances)
    assert len({type(inst) for inst in instances}) == len(excs)


def test_tool_error_is_a_called_process_error():
    exc = errors.ToolError(2, ["rpc", "activate"], "Unable to authenticate with AMT")
    assert isinstance(exc, subprocess.CalledProcessError)
    assert exc.output == "Unable to authenticate with AMT"
    assert "exit status 2" in str(exc)

    skipped = errors.ToolError(-1, ["rpc", "amtinfo"], None, reason="skipped: deadline exceeded")
    assert skipped.output == ""
    assert str(skipped).endswith("skipped: deadline exceeded")


def test_activation_not_requested_message():
    exc = errors.ActivationNotRequested("h1", Operation.DEACTIVATE)
    assert str(exc) == "activation not requested for host h1 (operation=DEACTIVATE)"
    assert exc.operation is Operation.DEACTIVATE
