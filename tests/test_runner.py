import os
import threading
from unittest.mock import patch

import pytest

from provisioner.common.errors import InstallCancelled, ProcessLaunchFailed, StepFailed
from provisioner.deps.model import DependencyPlan, InstallStep, Requirement
from provisioner.env.runner import Environment, EnvironmentRunner

class FakeProcess:
    """Stands in for a Popen object: canned output and exit code"""

    def __init__(self, lines: list[str], code: int):
        self.stdout = iter(f"{line}\n" for line in lines)
        self.code = code
        self.pid = 12345

    def wait(self) -> int:
        return self.code

    def poll(self):
        return self.code

class FakePopen:
    """Returns one FakeProcess per call, records the commands"""

    def __init__(self, results: list[tuple[list[str], int]]):
        self.results = list(results)
        self.calls = []

    def __call__(self, args, **kwargs):
        self.calls.append((args, kwargs))
        lines, code = self.results.pop(0)
        return FakeProcess(lines, code)

def step(name: str) -> InstallStep:
    return InstallStep(requirements=(Requirement(name),))

@pytest.fixture
def env(install_root) -> Environment:
    return Environment(root=os.path.join(install_root, "venv"), install_root=install_root)

@pytest.fixture
def plan() -> DependencyPlan:
    return DependencyPlan(steps=(step("a"), step("b"), step("c")))

def test_install_runs_steps_in_order(env, plan):
    popen = FakePopen([(["ok a"], 0), (["ok b"], 0), (["ok c"], 0)])
    lines = []

    with patch("provisioner.env.runner.subprocess.Popen", popen):
        result = EnvironmentRunner().install(env, plan, sink=lines.append)

    assert result.steps_run == 3
    assert [args[-1] for args, _ in popen.calls] == ["a", "b", "c"]
    assert popen.calls[0][0][:4] == [env.python, "-m", "pip", "install"]
    assert popen.calls[0][1]["cwd"] == env.install_root
    assert lines == ["ok a", "ok b", "ok c"]

def test_failed_step_stops_install(env, plan):
    output = [f"line {i}" for i in range(10)]
    popen = FakePopen([([], 0), (output, 1)])

    with patch("provisioner.env.runner.subprocess.Popen", popen):
        with pytest.raises(StepFailed) as exc_info:
            EnvironmentRunner(tail_lines=3).install(env, plan)

    assert exc_info.value.step_index == 1
    assert exc_info.value.output_tail == ["line 7", "line 8", "line 9"]
    # the third step never ran
    assert len(popen.calls) == 2

def test_cancel_before_start(env, plan):
    popen = FakePopen([])
    cancel = threading.Event()
    cancel.set()

    with patch("provisioner.env.runner.subprocess.Popen", popen):
        with pytest.raises(InstallCancelled):
            EnvironmentRunner().install(env, plan, cancel=cancel)

    assert popen.calls == []

def test_cancel_during_step(env, plan):
    cancel = threading.Event()
    popen = FakePopen([([], 0), ([], 0), ([], 0)])

    def on_step(idx, _):
        if idx == 1:
            cancel.set()

    with patch("provisioner.env.runner.subprocess.Popen", popen):
        with pytest.raises(InstallCancelled) as exc_info:
            EnvironmentRunner().install(env, plan, cancel=cancel, on_step=on_step)

    assert exc_info.value.context["step_index"] == 1
    assert len(popen.calls) == 2

def test_on_step_reports_every_step(env, plan):
    seen = []
    popen = FakePopen([([], 0)] * 3)

    with patch("provisioner.env.runner.subprocess.Popen", popen):
        EnvironmentRunner().install(env, plan, on_step=lambda idx, s: seen.append((idx, s.describe())))

    assert seen == [(0, "a"), (1, "b"), (2, "c")]

def test_setup_creates_venv(install_root):
    popen = FakePopen([([], 0)])

    with patch("provisioner.env.runner.subprocess.Popen", popen):
        env = EnvironmentRunner(base_python="/usr/bin/python3").setup(install_root)

    assert env.root == os.path.join(install_root, "venv")
    assert popen.calls[0][0] == ["/usr/bin/python3", "-m", "venv", env.root]

def test_setup_reuses_existing(env, install_root):
    os.makedirs(os.path.dirname(env.python))
    open(env.python, "w").close()
    popen = FakePopen([])

    with patch("provisioner.env.runner.subprocess.Popen", popen):
        EnvironmentRunner().setup(install_root)

    assert popen.calls == []

def test_setup_recreate_removes_existing(env, install_root):
    os.makedirs(os.path.dirname(env.python))
    open(env.python, "w").close()
    popen = FakePopen([([], 0)])

    with patch("provisioner.env.runner.subprocess.Popen", popen):
        EnvironmentRunner().setup(install_root, recreate=True)

    assert not os.path.exists(env.python)
    assert len(popen.calls) == 1

def test_setup_failure(install_root):
    popen = FakePopen([(["Error: no venv module"], 1)])

    with patch("provisioner.env.runner.subprocess.Popen", popen):
        with pytest.raises(StepFailed) as exc_info:
            EnvironmentRunner().setup(install_root)

    assert exc_info.value.step_index == -1
    assert exc_info.value.output_tail == ["Error: no venv module"]

def test_spawn_failure(env, plan):
    with patch("provisioner.env.runner.subprocess.Popen", side_effect=FileNotFoundError("python")):
        with pytest.raises(ProcessLaunchFailed):
            EnvironmentRunner().install(env, plan)

def test_child_env_drops_pythonpath(env, plan, monkeypatch):
    monkeypatch.setenv("PYTHONPATH", "/somewhere")
    popen = FakePopen([([], 0)] * 3)

    with patch("provisioner.env.runner.subprocess.Popen", popen):
        EnvironmentRunner().install(env, plan)

    child_env = popen.calls[0][1]["env"]
    assert "PYTHONPATH" not in child_env
    assert child_env["PYTHONUNBUFFERED"] == "1"

def test_failing_sink_stops_child(env, plan):
    proc = FakeProcess(["first", "second"], 0)
    proc.poll = lambda: None

    def bad_sink(line):
        raise RuntimeError("sink broke")

    with patch("provisioner.env.runner.subprocess.Popen", return_value=proc), \
            patch("provisioner.env.runner.terminate_tree") as terminate:
        with pytest.raises(RuntimeError):
            EnvironmentRunner(stop_timeout=1.0).install(env, plan, sink=bad_sink)

    terminate.assert_called_once_with(proc, timeout=1.0)
