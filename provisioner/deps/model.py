from dataclasses import dataclass
import re

_NAME = re.compile(r"^([A-Za-z0-9][A-Za-z0-9._\-]*(?:\[[^\]]*\])?)\s*(.*)$")

@dataclass(frozen=True)
class Requirement:
    name: str
    # version specifier / marker, kept as written
    pin: str = ""

    @staticmethod
    def parse(line: str) -> 'Requirement':
        line = line.strip()
        m = _NAME.match(line)
        if m is None:
            return Requirement(name=line)
        return Requirement(name=m.group(1), pin=m.group(2).strip())

    def __str__(self) -> str:
        return f"{self.name}{self.pin}"

@dataclass(frozen=True)
class InstallStep:
    """
    One pip invocation.
    """
    requirements: tuple[Requirement, ...] = ()
    flags: tuple[str, ...] = ()
    index_url: str | None = None
    # pattern that filtered the manifest this step came from, for diagnostics
    exclude_pattern: str | None = None
    # "base", "torch", "accelerator", "manifest" or "extra"
    kind: str = "manifest"

    def pip_args(self) -> list[str]:
        args = list(self.flags)
        args.extend(str(r) for r in self.requirements)
        if self.index_url:
            args.extend(["--extra-index-url", self.index_url])
        return args

    def describe(self) -> str:
        return " ".join(self.pip_args())

@dataclass(frozen=True)
class DependencyPlan:
    steps: tuple[InstallStep, ...]

    def __len__(self) -> int:
        return len(self.steps)

    def __iter__(self):
        return iter(self.steps)

    def of_kind(self, kind: str) -> list[InstallStep]:
        return [s for s in self.steps if s.kind == kind]

    @property
    def manifest_requirements(self) -> list[str]:
        return [step.describe() for step in self.of_kind("manifest")]
