from __future__ import annotations

import logging
import os
import pwd
from types import SimpleNamespace

import pytest

from conftest import INVOKER
from fakes import FakeCall, argv_contains
from stager.errors import StagingError
from stager.model import CommandResult, StagingIdentity
from stager.process import wrap_for_identity
from stager.secure import CHMOD, CHOWN, invoking_user


def test_without_identity_runs_plain_command(executor, runner, tmp_path):
    res = executor.run_secure(["bin/detect", str(tmp_path)], tmp_path)

    assert res.ok
    assert [c.argv for c in runner.calls] == [["bin/detect", str(tmp_path)]]
    assert runner.calls[0].cwd == str(tmp_path)
    assert runner.calls[0].identity is None


def test_bracket_order_with_identity(executor, runner, identity, tmp_path):
    executor.run_secure(["bin/compile", str(tmp_path)], tmp_path, identity)

    lines = [c.argv for c in runner.calls]
    assert lines == [
        [CHMOD, "-R", "0755", str(tmp_path)],
        ["sudo", CHOWN, "-R", "4242:4343", str(tmp_path)],
        ["bin/compile", str(tmp_path)],
        ["pkill", "-9", "-U", "4242"],
        ["sudo", CHOWN, "-R", INVOKER, str(tmp_path)],
    ]
    assert runner.calls[2].identity == identity
    assert runner.calls[3].identity == identity


def test_workdir_owned_by_identity_only_during_the_command(executor, runner, identity, tmp_path):
    seen = []

    def command(call: FakeCall) -> CommandResult:
        seen.append(runner.owners.get(str(tmp_path)))
        return CommandResult(0, "")

    runner.owners[str(tmp_path)] = INVOKER
    runner.respond(argv_contains("bin/compile"), command)

    executor.run_secure(["bin/compile"], tmp_path, identity)

    assert seen == ["4242:4343"]
    assert runner.owners[str(tmp_path)] == INVOKER


def test_failed_command_still_unsecures(executor, runner, identity, tmp_path):
    runner.respond(argv_contains("bin/compile"), CommandResult(3, "boom\n"))

    res = executor.run_secure(["bin/compile"], tmp_path, identity)

    assert res.exit_status == 3
    assert res.output == "boom\n"
    assert runner.owners[str(tmp_path)] == INVOKER
    assert runner.calls_with("pkill")


def test_runner_exception_still_unsecures(executor, runner, identity, tmp_path):
    def explode(call):
        raise RuntimeError("runner died")

    runner.respond(argv_contains("bin/compile"), explode)

    with pytest.raises(RuntimeError):
        executor.run_secure(["bin/compile"], tmp_path, identity)

    assert runner.owners[str(tmp_path)] == INVOKER
    assert runner.calls_with("pkill")


def test_chmod_failure_is_fatal_and_command_never_runs(executor, runner, identity, tmp_path):
    runner.respond(argv_contains(CHMOD), CommandResult(1, "Operation not permitted"))

    with pytest.raises(StagingError) as exc:
        executor.run_secure(["bin/compile"], tmp_path, identity)

    assert exc.value.kind == "secure_failed"
    assert "Failed chmodding dir" in exc.value.message
    assert not runner.calls_with("bin/compile")


def test_chown_failure_is_fatal(executor, runner, identity, tmp_path):
    runner.respond(argv_contains("4242:4343"), CommandResult(1, "no sudo"))

    with pytest.raises(StagingError) as exc:
        executor.run_secure(["bin/compile"], tmp_path, identity)

    assert exc.value.kind == "secure_failed"
    assert not runner.calls_with("bin/compile")
    # a partial chown -R is handed back before the error propagates
    assert runner.calls[-1].argv == ["sudo", CHOWN, "-R", INVOKER, str(tmp_path)]
    assert runner.owners[str(tmp_path)] == INVOKER


def test_unsecure_failure_is_logged_not_raised(executor, runner, identity, tmp_path, caplog):
    runner.respond(argv_contains(INVOKER), CommandResult(1, "chown: denied"))

    with caplog.at_level(logging.ERROR, logger="test.stager"):
        res = executor.run_secure(["bin/compile"], tmp_path, identity)

    assert res.ok
    assert "Failed to unsecure dir" in caplog.text


def test_group_switch_uses_group_name(executor, runner, identity, tmp_path, monkeypatch):
    monkeypatch.setattr("stager.secure.grp.getgrgid", lambda gid: SimpleNamespace(gr_name="vcap"))

    executor.run_secure_group(["npm", "install"], tmp_path, identity)

    (call,) = runner.calls_with("npm")
    assert call.group == "vcap"
    assert call.identity == identity


def test_group_switch_without_gid_runs_without_group(executor, runner, tmp_path):
    ident = StagingIdentity(uid=4242)

    executor.run_secure_group(["npm", "install"], tmp_path, ident)

    (call,) = runner.calls_with("npm")
    assert call.group is None
    assert runner.calls_with("sudo", CHOWN, "-R", "4242")


def test_run_secure_succeeded(executor, runner, tmp_path):
    runner.respond(argv_contains("false"), CommandResult(1, ""))

    assert executor.run_secure_succeeded(["true"], tmp_path)
    assert not executor.run_secure_succeeded(["false"], tmp_path)


def test_secure_delete_takes_ownership_back_and_removes(executor, runner, identity, tmp_path):
    scratch = tmp_path / "scratch"
    (scratch / "nested").mkdir(parents=True)
    (scratch / "nested" / "file").write_text("x")

    executor.secure_delete(scratch, identity)

    assert not scratch.exists()
    assert runner.calls_with("sudo", CHOWN, "-R", INVOKER, str(scratch))


def test_wrap_for_identity():
    ident = StagingIdentity(uid=7)

    assert wrap_for_identity(["ls", "-l"], None) == ["ls", "-l"]
    assert wrap_for_identity(["ls", "-l"], ident) == ["sudo", "-u", "#7", "ls", "-l"]
    assert wrap_for_identity(["npm", "install", "a b"], ident, "vcap") == [
        "sudo", "-u", "#7", "sg", "vcap", "-c", "npm install 'a b'",
    ]


def test_missing_group_entry_is_a_staging_error(executor, runner, identity, tmp_path, monkeypatch):
    def no_group(gid):
        raise KeyError(f"getgrgid(): gid not found: {gid}")

    monkeypatch.setattr("stager.secure.grp.getgrgid", no_group)

    with pytest.raises(StagingError) as exc:
        executor.run_secure_group(["npm", "install"], tmp_path, identity)

    assert exc.value.kind == "secure_failed"
    assert "4343" in exc.value.message
    assert not runner.calls_with("npm")
    assert runner.owners[str(tmp_path)] == INVOKER


def test_invoking_user_is_the_effective_user(monkeypatch):
    monkeypatch.setenv("LOGNAME", "nobody-in-particular")
    monkeypatch.setenv("USER", "nobody-in-particular")

    assert invoking_user() == pwd.getpwuid(os.geteuid()).pw_name


def test_invoking_user_without_passwd_entry(monkeypatch):
    def no_entry(uid):
        raise KeyError(uid)

    monkeypatch.setattr("stager.secure.pwd.getpwuid", no_entry)

    assert invoking_user() == str(os.geteuid())
