import os
import shutil
from typing import Any

from loguru import logger

from provisioner import hardware
from provisioner.app_config import AppConfig
from provisioner.common.errors import StepFailed, UnsupportedBackend
from provisioner.common.logging import timeit
from provisioner.common.progress import InstallContext
from provisioner.deps.model import InstallStep
from provisioner.deps.plan import build_plan
from provisioner.env.runner import Environment, EnvironmentRunner
from provisioner.launch.options import overrides_to_persist, resolve_arguments
from provisioner.linking.linker import SharedFolderLinker
from provisioner.packages.model import Backend, InstalledPackage, PackageSpec, SharedFolderMethod
from provisioner.packages.registry import PackageRegistry
from provisioner.process.supervisor import ExitCallback, ProcessHandle, ProcessSupervisor, ReadyCallback

logger = logger.bind(name="Package Manager")

class PackageManager:
    """
    Installs, updates, launches and removes packages.

    One install or launch per call. Callers must not run two operations on the same
    install root at once.
    """

    def __init__(
        self,
        cfg: AppConfig,
        registry: PackageRegistry | None = None,
        runner: EnvironmentRunner | None = None,
        linker: SharedFolderLinker | None = None,
        supervisor: ProcessSupervisor | None = None
    ):
        self.cfg = cfg
        self.registry = registry or PackageRegistry()
        self.runner = runner or EnvironmentRunner(
            venv_dir_name=cfg.runner.venv_dir_name,
            tail_lines=cfg.runner.output_tail_lines,
            stop_timeout=cfg.runner.stop_timeout
        )
        self.linker = linker or SharedFolderLinker()
        self.supervisor = supervisor or ProcessSupervisor(stop_timeout=cfg.runner.stop_timeout)

    def context(self, **kwargs) -> InstallContext:
        assert self.cfg.models_dir is not None
        return InstallContext(library_dir=self.cfg.library_dir, models_dir=self.cfg.models_dir, **kwargs)

    def install(
        self,
        name: str,
        ctx: InstallContext,
        backend: Backend | None = None,
        method: SharedFolderMethod | None = None,
        version_tag: str | None = None,
        install_root: str | None = None
    ) -> InstalledPackage:
        """
        Downloads the package, builds a fresh environment, installs its requirements and
        wires up shared folders.

        Raises:
            MissingResourceError: unknown package
            UnsupportedBackend: backend is not valid for the package
            StepFailed: a download or install step failed
            InstallCancelled: ctx.cancel was set
        """
        spec = self.registry.get(name)
        backend = backend or hardware.recommended_backend(spec)
        if not spec.supports(backend):
            raise UnsupportedBackend(
                f"{spec.display_name} does not support the {backend.value} backend",
                package=spec.name
            )
        method = method or spec.recommended_method
        assert self.cfg.packages_dir is not None
        install_root = install_root or os.path.join(self.cfg.packages_dir, spec.name)

        with timeit(f"Installing {spec.display_name}", package=spec.name, backend=backend.value):
            ctx.report(None, f"Downloading {spec.display_name}")
            self._checkout(spec, install_root, version_tag, ctx)

            ctx.report(None, "Setting up venv")
            env = self.runner.setup(install_root, recreate=True, sink=ctx.output)

            self._install_requirements(spec, env, backend, version_tag, ctx)

            if spec.post_install is not None:
                ctx.report(None, "Updating configuration")
                spec.post_install(install_root)

            ctx.report(None, "Setting up shared folders")
            self.linker.setup(spec, install_root, method, ctx.models_dir)
            self._link_outputs(spec, install_root)

            ctx.report(1.0, "Install complete")

        return InstalledPackage(
            package_name=spec.name,
            install_root=install_root,
            backend=backend,
            shared_folder_method=method,
            version_tag=version_tag or spec.main_branch
        )

    def update(self, installed: InstalledPackage, ctx: InstallContext, version_tag: str | None = None) -> InstalledPackage:
        """Checks out a new version and reinstalls requirements into the existing environment."""
        spec = self.registry.get(installed.package_name)
        with timeit(f"Updating {spec.display_name}", package=spec.name, version=version_tag or spec.main_branch):
            ctx.report(None, f"Updating {spec.display_name}")
            self._checkout(spec, installed.install_root, version_tag, ctx)

            env = self.runner.setup(installed.install_root, recreate=False, sink=ctx.output)
            self._install_requirements(spec, env, installed.backend, version_tag, ctx)

            # a checkout may have replaced linked folders with plain ones
            self.linker.setup(spec, installed.install_root, installed.shared_folder_method, ctx.models_dir)
            ctx.report(1.0, "Update complete")

        installed.version_tag = version_tag or spec.main_branch
        return installed

    def launch(
        self,
        installed: InstalledPackage,
        ctx: InstallContext,
        on_exit: ExitCallback | None = None,
        on_ready: ReadyCallback | None = None
    ) -> ProcessHandle:
        """
        Starts the package's service. The serving url is stored on `installed` once the
        service reports it.
        """
        spec = self.registry.get(installed.package_name)
        env = self.runner.setup(installed.install_root, recreate=False, sink=ctx.output)
        args = resolve_arguments(spec.launch_options, installed.launch_overrides)

        def handle_ready(url: str) -> None:
            installed.last_url = url
            if on_ready is not None:
                on_ready(url)

        return self.supervisor.launch(
            entrypoint=spec.entrypoint,
            args=args,
            install_root=installed.install_root,
            output_sink=ctx.output,
            on_exit=on_exit,
            ready_matcher=spec.ready_matcher,
            on_ready=handle_ready,
            python=env.python,
            name=spec.name
        )

    def uninstall(self, installed: InstalledPackage) -> None:
        spec = self.registry.get(installed.package_name)
        logger.info("Uninstalling package", extra={"package": spec.name, "path": installed.install_root})
        # links first so nothing shared is deleted with the tree
        self.linker.remove(spec, installed.install_root, installed.shared_folder_method)
        self.linker.remove_outputs(spec, installed.install_root)
        if os.path.exists(installed.install_root):
            shutil.rmtree(installed.install_root)

    def set_shared_folder_method(self, installed: InstalledPackage, method: SharedFolderMethod, models_dir: str) -> None:
        spec = self.registry.get(installed.package_name)
        if method == installed.shared_folder_method:
            return
        self.linker.remove(spec, installed.install_root, installed.shared_folder_method)
        self.linker.setup(spec, installed.install_root, method, models_dir)
        installed.shared_folder_method = method

    def save_launch_options(self, installed: InstalledPackage, values: dict[str, Any]) -> None:
        spec = self.registry.get(installed.package_name)
        installed.launch_overrides = overrides_to_persist(spec.launch_options, values)

    def cancel(self, ctx: InstallContext) -> None:
        """Cancels the running install: pending steps are skipped, the current one is killed."""
        ctx.cancel.set()
        self.runner.terminate()

    def _install_requirements(
        self,
        spec: PackageSpec,
        env: Environment,
        backend: Backend,
        version_tag: str | None,
        ctx: InstallContext
    ) -> None:
        requirements_path = os.path.join(env.install_root, spec.requirements_file)
        if os.path.exists(requirements_path):
            with open(requirements_path, "r", encoding="utf-8") as f:
                requirements = f.read()
        else:
            logger.warning("Requirements file not found", extra={"path": requirements_path})
            requirements = ""

        plan = build_plan(spec, backend, requirements, version_tag=version_tag)

        def report_step(idx: int, step: InstallStep) -> None:
            ctx.report(idx / len(plan), f"Installing requirements ({idx + 1}/{len(plan)})")

        with timeit("Installing requirements", package=spec.name, steps=len(plan)):
            self.runner.install(env, plan, ctx.output, ctx.cancel, on_step=report_step)

    def _checkout(self, spec: PackageSpec, install_root: str, version_tag: str | None, ctx: InstallContext) -> None:
        ref = version_tag or spec.main_branch
        if os.path.isdir(os.path.join(install_root, ".git")):
            commands = [
                ["git", "fetch", "--tags", "origin"],
                ["git", "checkout", "--force", ref],
            ]
            if version_tag is None:
                commands.append(["git", "pull", "--ff-only", "origin", ref])
            cwd = install_root
        elif os.path.isdir(install_root) and os.listdir(install_root):
            logger.info("Install root already populated, skipping download", extra={"path": install_root})
            return
        else:
            parent = os.path.dirname(os.path.abspath(install_root))
            os.makedirs(parent, exist_ok=True)
            commands = [["git", "clone", "--branch", ref, spec.repository_url, install_root]]
            cwd = parent

        for args in commands:
            code = self.runner.run(args, cwd, ctx.output)
            if code != 0:
                raise StepFailed(
                    f"Download step exited with code {code}",
                    step_index=-1,
                    output_tail=[],
                    command=" ".join(args)
                )

    def _link_outputs(self, spec: PackageSpec, install_root: str) -> None:
        assert self.cfg.outputs_dir is not None
        self.linker.setup_outputs(spec, install_root, self.cfg.outputs_dir)
