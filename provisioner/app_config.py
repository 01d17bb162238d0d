from dataclasses import dataclass, field
import os

import yaml
from dacite import Config, from_dict

@dataclass
class RunnerConfig:
    venv_dir_name: str = "venv"
    # lines of install output kept for StepFailed diagnostics
    output_tail_lines: int = 50
    # seconds to wait after terminate before killing
    stop_timeout: float = 5.0

@dataclass
class AppConfig:
    root_dir: str
    # everything the engine writes lives under here
    library_dir: str
    models_dir: str | None = None
    packages_dir: str | None = None
    outputs_dir: str | None = None
    runner: RunnerConfig = field(default_factory=RunnerConfig)

    def __post_init__(self):
        if self.models_dir is None:
            self.models_dir = os.path.join(self.library_dir, "Models")
        if self.packages_dir is None:
            self.packages_dir = os.path.join(self.library_dir, "Packages")
        if self.outputs_dir is None:
            self.outputs_dir = os.path.join(self.library_dir, "Images")

    @staticmethod
    def from_yaml(filename: str) -> 'AppConfig':
        with open(filename, 'r') as f:
            data = yaml.safe_load(f) or {}
        return AppConfig.from_data(data)

    @staticmethod
    def from_data(data: dict) -> 'AppConfig':
        if "root_dir" not in data:
            data["root_dir"] = os.getcwd()
        data = AppConfig._resolve_paths(data, data["root_dir"])
        # yaml reads "stop_timeout: 5" as an int
        return from_dict(AppConfig, data, config=Config(cast=[float]))

    @staticmethod
    def _resolve_paths(data: dict, root: str) -> dict:

        def resolve_path(value: str) -> str:
            if os.path.isabs(value):
                return value
            return os.path.join(root, value)

        def resolve_config(config: dict) -> dict:
            for key, value in config.items():
                if isinstance(value, str) and (key.endswith('_dir') or key.endswith('_path')):
                    config[key] = resolve_path(value)
                elif isinstance(value, dict):
                    config[key] = resolve_config(value)
            return config

        return resolve_config(data)
