import os
from unittest.mock import Mock

import pytest
import yaml

from provisioner.app_config import AppConfig
from provisioner.common.errors import MissingResourceError, StepFailed, UnsupportedBackend
from provisioner.env.runner import Environment, EnvironmentRunner
from provisioner.launch.model import LaunchOverride
from provisioner.linking.linker import SharedFolderLinker
from provisioner.manager import PackageManager
from provisioner.packages.model import Backend, InstalledPackage, SharedFolderMethod
from provisioner.packages.registry import PackageRegistry
from provisioner.process.supervisor import ProcessHandle, ProcessSupervisor

@pytest.fixture
def cfg(temp_dir: str) -> AppConfig:
    return AppConfig.from_data({"root_dir": temp_dir, "library_dir": temp_dir})

@pytest.fixture
def runner() -> Mock:
    runner = Mock(spec=EnvironmentRunner)
    runner.run.return_value = 0

    def setup(install_root, recreate=False, sink=None):
        return Environment(root=os.path.join(install_root, "venv"), install_root=install_root)

    runner.setup.side_effect = setup
    return runner

@pytest.fixture
def supervisor() -> Mock:
    sup = Mock(spec=ProcessSupervisor)
    sup.launch.return_value = Mock(spec=ProcessHandle)
    return sup

@pytest.fixture
def manager(cfg, demo_spec, runner, supervisor) -> PackageManager:
    return PackageManager(
        cfg,
        registry=PackageRegistry((demo_spec,)),
        runner=runner,
        linker=SharedFolderLinker(),
        supervisor=supervisor
    )

@pytest.fixture
def checked_out(cfg) -> str:
    """Install root that already looks like a clone"""
    root = os.path.join(cfg.packages_dir, "demo")
    os.makedirs(os.path.join(root, ".git"))
    with open(os.path.join(root, "requirements.txt"), "w") as f:
        f.write("torch\nnumpy\n")
    return root

def test_context_uses_config_dirs(manager, cfg):
    ctx = manager.context()
    assert ctx.models_dir == cfg.models_dir
    assert ctx.library_dir == cfg.library_dir

def test_unknown_package(manager, ctx):
    with pytest.raises(MissingResourceError):
        manager.install("nope", ctx, backend=Backend.CPU)

def test_unsupported_backend_fails_before_work(manager, ctx, runner):
    with pytest.raises(UnsupportedBackend):
        manager.install("demo", ctx, backend=Backend.ROCM)
    runner.run.assert_not_called()
    runner.setup.assert_not_called()

def test_install(manager, ctx, runner, checked_out):
    installed = manager.install("demo", ctx, backend=Backend.CPU)

    assert installed.install_root == checked_out
    assert installed.backend == Backend.CPU
    assert installed.shared_folder_method == SharedFolderMethod.CONFIGURATION
    assert installed.version_tag == "main"

    runner.setup.assert_called_once_with(checked_out, recreate=True, sink=ctx.output)
    plan = runner.install.call_args[0][1]
    assert [s.kind for s in plan] == ["base", "torch", "manifest"]
    assert plan.manifest_requirements == ["numpy"]

    # existing clone is updated, not cloned again
    commands = [call[0][0] for call in runner.run.call_args_list]
    assert commands[0][:2] == ["git", "fetch"]
    assert all(cmd[1] != "clone" for cmd in commands)

    with open(os.path.join(checked_out, "extra_model_paths.yaml")) as f:
        section = yaml.safe_load(f)["stability_matrix"]
    assert section["checkpoints"] == os.path.join(ctx.models_dir, "StableDiffusion")

    assert ctx.reports[-1].fraction == 1.0

def test_install_clones_into_empty_root(manager, ctx, runner, cfg):
    manager.install("demo", ctx, backend=Backend.CPU, method=SharedFolderMethod.NONE, version_tag="v1.0")

    args, cwd, _ = runner.run.call_args[0]
    assert args == ["git", "clone", "--branch", "v1.0", "https://example.com/demo.git", os.path.join(cfg.packages_dir, "demo")]
    assert cwd == cfg.packages_dir

def test_failed_checkout(manager, ctx, runner):
    runner.run.return_value = 128
    with pytest.raises(StepFailed) as exc_info:
        manager.install("demo", ctx, backend=Backend.CPU)
    assert exc_info.value.step_index == -1
    runner.install.assert_not_called()

def test_install_reports_step_progress(manager, ctx, runner, checked_out):

    def install(env, plan, sink=None, cancel=None, on_step=None):
        for idx, step in enumerate(plan):
            on_step(idx, step)

    runner.install.side_effect = install
    manager.install("demo", ctx, backend=Backend.CPU, method=SharedFolderMethod.NONE)

    fractions = [r.fraction for r in ctx.reports if r.fraction is not None]
    assert fractions == sorted(fractions)
    assert fractions[0] == 0.0
    assert fractions[-1] == 1.0

def test_launch_records_url(manager, ctx, supervisor, checked_out):
    installed = InstalledPackage(
        package_name="demo",
        install_root=checked_out,
        backend=Backend.CPU,
        shared_folder_method=SharedFolderMethod.NONE,
        launch_overrides=[LaunchOverride("Port", "9000")],
    )

    manager.launch(installed, ctx)

    kwargs = supervisor.launch.call_args.kwargs
    assert kwargs["entrypoint"] == "main.py"
    assert kwargs["args"] == ["--port", "9000"]
    assert kwargs["python"] == Environment(os.path.join(checked_out, "venv"), checked_out).python

    kwargs["on_ready"]("http://127.0.0.1:9000")
    assert installed.last_url == "http://127.0.0.1:9000"

def test_uninstall_keeps_shared_models(manager, ctx, checked_out):
    installed = manager.install("demo", ctx, backend=Backend.CPU, method=SharedFolderMethod.SYMLINK)
    model = os.path.join(ctx.models_dir, "StableDiffusion", "model.safetensors")
    with open(model, "w") as f:
        f.write("weights")

    manager.uninstall(installed)

    assert not os.path.exists(checked_out)
    assert os.path.exists(model)

def test_set_shared_folder_method(manager, ctx, checked_out):
    installed = manager.install("demo", ctx, backend=Backend.CPU, method=SharedFolderMethod.CONFIGURATION)
    config_path = os.path.join(checked_out, "extra_model_paths.yaml")

    manager.set_shared_folder_method(installed, SharedFolderMethod.SYMLINK, ctx.models_dir)

    assert installed.shared_folder_method == SharedFolderMethod.SYMLINK
    assert os.path.islink(os.path.join(checked_out, "models/checkpoints"))
    with open(config_path) as f:
        assert "stability_matrix" not in (yaml.safe_load(f) or {})

def test_save_launch_options(manager, checked_out):
    installed = InstalledPackage(
        package_name="demo",
        install_root=checked_out,
        backend=Backend.CPU,
        shared_folder_method=SharedFolderMethod.NONE,
    )
    manager.save_launch_options(installed, {"Port": "8188", "--cpu": True})
    assert installed.launch_overrides == [LaunchOverride("--cpu", True)]

def test_cancel(manager, ctx, runner):
    manager.cancel(ctx)
    assert ctx.cancelled()
    runner.terminate.assert_called_once()

def test_installed_package_round_trip(checked_out):
    installed = InstalledPackage(
        package_name="demo",
        install_root=checked_out,
        backend=Backend.CUDA,
        shared_folder_method=SharedFolderMethod.SYMLINK,
        launch_overrides=[LaunchOverride("--cpu", True)],
    )
    restored = InstalledPackage.from_dict(installed.to_dict())
    assert restored == installed

def test_update_reuses_environment(manager, ctx, runner, checked_out):
    installed = InstalledPackage(
        package_name="demo",
        install_root=checked_out,
        backend=Backend.CPU,
        shared_folder_method=SharedFolderMethod.NONE,
        version_tag="main",
    )

    manager.update(installed, ctx, version_tag="v2.0")

    runner.setup.assert_called_once_with(checked_out, recreate=False, sink=ctx.output)
    commands = [call[0][0] for call in runner.run.call_args_list]
    assert commands == [["git", "fetch", "--tags", "origin"], ["git", "checkout", "--force", "v2.0"]]
    assert installed.version_tag == "v2.0"
    runner.install.assert_called_once()
