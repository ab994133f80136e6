"""Tests for script loading and the action state machine."""

import pytest

from conftest import FakeSession
from sshfleet.errors import ErrorKind, ScriptError, SSHConnectionError
from sshfleet.events import CancelToken
from sshfleet.script import (
    ActionState,
    CommandStep,
    DownloadStep,
    ScriptRunner,
    UploadStep,
    list_actions,
    load_script,
    parse_script,
    truncate_lines,
)
from sshfleet.session import CommandResult


def _script(**actions):
    return parse_script({"info": {"name": "deploy", "desc": "Deploy the app"}, "script": actions})


class TestParseScript:
    def test_step_form(self):
        script = _script(
            release={
                "desc": "Ship a release",
                "steps": [
                    {"type": "upload", "local": "dist/app.tar", "remote": "/opt/app.tar", "resume": True},
                    {"type": "command", "sudo": True, "commands": ["tar xf /opt/app.tar -C /opt"]},
                    {"type": "download", "local": "logs/", "remote": "/var/log/app/", "max_retry": 2},
                ],
            }
        )

        steps = script.actions["release"].steps
        assert steps[0] == UploadStep("dist/app.tar", "/opt/app.tar", resume=True)
        assert steps[1] == CommandStep(["tar xf /opt/app.tar -C /opt"], sudo=True)
        assert steps[2] == DownloadStep("logs/", "/var/log/app/", max_retry=2)

    def test_flat_form_is_one_command_step(self):
        script = _script(update={"desc": "Update packages", "sudo": True, "commands": ["apt update", "apt upgrade -y"]})
        assert script.actions["update"].steps == [CommandStep(["apt update", "apt upgrade -y"], sudo=True)]

    def test_actions_keep_declared_order(self):
        script = _script(b={"commands": ["true"]}, a={"commands": ["true"]})
        assert list_actions(script) == [("b", ""), ("a", "")]

    def test_unknown_step_type(self):
        with pytest.raises(ScriptError, match="unknown step type"):
            _script(x={"steps": [{"type": "reboot"}]})

    def test_transfer_step_needs_paths(self):
        with pytest.raises(ScriptError, match="local"):
            _script(x={"steps": [{"type": "upload", "remote": "/tmp/x"}]})

    def test_missing_name(self):
        with pytest.raises(ScriptError):
            parse_script({"script": {"a": {"commands": ["true"]}}})

    def test_unknown_action_rejected(self):
        script = _script(a={"commands": ["true"]})
        with pytest.raises(ScriptError, match="not found"):
            script.validate_actions(["a", "b"])

    def test_load_script(self, tmp_path):
        path = tmp_path / "script.yaml"
        path.write_text(
            "info:\n"
            "  name: maintenance\n"
            "script:\n"
            "  uptime:\n"
            "    desc: Show uptime\n"
            "    commands: [uptime]\n"
        )
        script = load_script(path)
        assert script.name == "maintenance"
        assert script.source_path == path
        assert list_actions(script) == [("uptime", "Show uptime")]


def test_truncate_lines():
    assert truncate_lines("a\nb") == "a\nb"
    assert truncate_lines("1\n2\n3\n4\n5") == "1\n2\n3\n... (truncated 2 more lines)"


class TestScriptRunner:
    @pytest.mark.asyncio
    async def test_failing_step_stops_its_action_only(self):
        script = _script(
            deploy={
                "steps": [
                    {"type": "command", "commands": ["step1"]},
                    {"type": "command", "commands": ["step2"]},
                    {"type": "command", "commands": ["step3"]},
                    {"type": "command", "commands": ["step4"]},
                    {"type": "command", "commands": ["step5"]},
                ]
            },
            status={"commands": ["systemctl status app"]},
        )
        output = "\n".join(f"error line {n}" for n in range(1, 6))
        session = FakeSession(responses={"step3": CommandResult("step3", 1, output, "")})

        results = await ScriptRunner(script).run(session, ["deploy", "status"])

        deploy, status = results
        assert deploy.state is ActionState.FAILED
        assert deploy.steps_completed == 2
        assert deploy.error_kind is ErrorKind.COMMAND
        assert "step 3" in deploy.message
        assert "error line 3" in deploy.message
        assert "error line 4" not in deploy.message
        assert status.state is ActionState.COMPLETED
        assert [c for c, _ in session.commands] == ["step1", "step2", "step3", "systemctl status app"]

    @pytest.mark.asyncio
    async def test_commands_in_step_run_in_order_with_sudo(self):
        script = _script(update={"sudo": True, "commands": ["apt update", "apt upgrade -y"]})
        session = FakeSession()

        [result] = await ScriptRunner(script).run(session, ["update"])

        assert result.ok
        assert session.commands == [("apt update", True), ("apt upgrade -y", True)]

    @pytest.mark.asyncio
    async def test_connection_loss_recorded_with_kind(self):
        script = _script(a={"commands": ["uptime"]})
        session = FakeSession(responses={"uptime": SSHConnectionError("connection lost")})

        [result] = await ScriptRunner(script).run(session, ["a"])

        assert result.state is ActionState.FAILED
        assert result.error_kind is ErrorKind.CONNECTION

    @pytest.mark.asyncio
    async def test_cancel_between_steps(self):
        cancel = CancelToken()
        script = _script(a={"commands": ["one"]}, b={"commands": ["two"]})
        session = FakeSession(responses={"one": CommandResult("one", 0, "", "")})
        runner = ScriptRunner(script, cancel=cancel)

        original_exec = session.exec

        async def exec_then_cancel(command, sudo=False, check=True):
            result = await original_exec(command, sudo, check)
            cancel.cancel()
            return result

        session.exec = exec_then_cancel
        first, second = await runner.run(session, ["a", "b"])

        assert first.state is ActionState.COMPLETED
        assert second.state is ActionState.CANCELLED
        assert [c for c, _ in session.commands] == ["one"]

    @pytest.mark.asyncio
    async def test_upload_step(self, local_root, remote_root):
        (local_root / "app.conf").write_text("listen 80;")
        script = _script(
            configure={
                "steps": [
                    {"type": "upload", "local": str(local_root / "app.conf"), "remote": str(remote_root / "app.conf")},
                    {"type": "command", "commands": ["nginx -s reload"]},
                ]
            }
        )
        events = []
        session = FakeSession()

        [result] = await ScriptRunner(script, on_progress=events.append).run(session, ["configure"])

        assert result.ok
        assert result.steps_completed == 2
        assert (remote_root / "app.conf").read_text() == "listen 80;"
        assert events and events[-1].bytes_done == 10

    @pytest.mark.asyncio
    async def test_failed_transfer_step_fails_action(self, local_root, remote_root):
        (local_root / "big.bin").write_bytes(b"x" * 100)
        script = _script(
            push={
                "steps": [
                    {"type": "upload", "local": str(local_root / "big.bin"), "remote": str(remote_root / "big.bin")},
                    {"type": "command", "commands": ["never"]},
                ]
            }
        )
        session = FakeSession(drop_after=10)

        [result] = await ScriptRunner(script).run(session, ["push"])

        assert result.state is ActionState.FAILED
        assert result.error_kind is ErrorKind.CONNECTION
        assert session.commands == []
