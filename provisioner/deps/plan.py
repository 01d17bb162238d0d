import re
import shlex

from provisioner.common.errors import UnsupportedBackend
from provisioner.deps.model import DependencyPlan, InstallStep, Requirement
from provisioner.packages.model import Backend, PackageSpec, TorchRecipe

DEFAULT_EXCLUDE = "torch"

# pip options that change where packages come from rather than what gets installed
INDEX_OPTIONS = frozenset({
    "-i", "--index-url",
    "--extra-index-url",
    "-f", "--find-links",
    "--trusted-host",
    "--pre",
    "--no-index",
})

def parse_requirements(requirements_text: str, exclude_pattern: str | None = None) -> list[str]:
    """
    Split a requirements manifest into one requirement per line.

    Blank lines and comments are dropped, and so is every line matching exclude_pattern
    (searched anywhere in the line). Order is preserved.
    """
    excluded = re.compile(exclude_pattern) if exclude_pattern else None
    lines = []
    for raw in requirements_text.splitlines():
        line = raw.split(" #", 1)[0].strip()
        if not line or line.startswith("#"):
            continue
        if excluded is not None and excluded.search(line):
            continue
        lines.append(line)
    return lines

def build_plan(
    spec: PackageSpec,
    backend: Backend,
    requirements_text: str,
    exclude_pattern: str | None = DEFAULT_EXCLUDE,
    version_tag: str | None = None
) -> DependencyPlan:
    """
    Builds the ordered install steps for a package. Pure, no I/O.

    Order: pip/wheel upgrade, backend tensor library, xformers (CUDA only),
    manifest requirements, version specific extras.

    Raises:
        UnsupportedBackend: backend is not one the package supports
    """
    if not spec.supports(backend):
        raise UnsupportedBackend(
            f"{spec.display_name} does not support the {backend.value} backend",
            package=spec.name,
            supported=[b.value for b in spec.backends]
        )

    steps = [
        InstallStep(
            requirements=(Requirement("pip"), Requirement("wheel")),
            flags=("--upgrade",),
            kind="base"
        ),
        _torch_step(spec.torch, backend),
    ]

    if backend == Backend.CUDA and spec.torch.xformers is not None:
        steps.append(InstallStep(
            requirements=(Requirement("xformers", spec.torch.xformers),),
            kind="accelerator"
        ))

    lines = parse_requirements(requirements_text, exclude_pattern)
    # index options apply to every manifest step, any other option line is a step of its own
    flags = tuple(arg for line in lines if _is_index_option(line) for arg in shlex.split(line))
    for line in lines:
        if _is_index_option(line):
            continue
        if line.startswith("-"):
            step = InstallStep(flags=flags + tuple(shlex.split(line)), exclude_pattern=exclude_pattern)
        else:
            step = InstallStep(requirements=(Requirement.parse(line),), flags=flags, exclude_pattern=exclude_pattern)
        steps.append(step)

    for line in spec.extra_requirements(version_tag):
        steps.append(InstallStep(requirements=(Requirement.parse(line),), kind="extra"))

    return DependencyPlan(steps=tuple(steps))

def _torch_step(recipe: TorchRecipe, backend: Backend) -> InstallStep:
    if backend == Backend.DIRECTML:
        return InstallStep(
            requirements=(Requirement(recipe.directml_package),),
            kind="torch"
        )

    if backend == Backend.MPS:
        return InstallStep(
            requirements=(Requirement("torch"), Requirement("torchvision")),
            flags=("--pre",),
            index_url=recipe.index_url(recipe.mps_index_tag),
            kind="torch"
        )

    tag = recipe.index_tags.get(backend)
    if tag is None:
        raise UnsupportedBackend(f"No torch index configured for the {backend.value} backend")

    return InstallStep(
        requirements=(Requirement("torch", recipe.torch), Requirement("torchvision", recipe.torchvision)),
        flags=("--upgrade",) if recipe.upgrade else (),
        index_url=recipe.index_url(tag),
        kind="torch"
    )


def _is_index_option(line: str) -> bool:
    if not line.startswith("-"):
        return False
    option = line.split(None, 1)[0].split("=", 1)[0]
    return option in INDEX_OPTIONS
