"""
Analyzer configuration management.
Loads and saves defaults for the command line from txcfg.config.yaml.
"""

from dataclasses import dataclass
from pathlib import Path

import yaml

DEFAULT_CONFIG_FILE = "txcfg.config.yaml"
IMAGE_FORMATS = ("png", "svg", "pdf")


@dataclass
class AnalyzerConfig:
    """Settings shared by the analyze and cfg commands."""

    rpc_url: str = "http://localhost:8545"
    output_dir: str = "./txcfg-out"
    image_format: str = None
    dot_path: str = "dot"
    symbolic_edges: bool = False
    jobs: int = 1
    quiet: bool = False

    def __post_init__(self):
        if self.image_format is not None and self.image_format not in IMAGE_FORMATS:
            raise ValueError(f"Unsupported image format '{self.image_format}', expected one of {', '.join(IMAGE_FORMATS)}")
        if self.jobs < 1:
            raise ValueError("jobs must be at least 1")

    @property
    def contracts_dir(self) -> str:
        return str(Path(self.output_dir) / "contracts")

    @property
    def global_dot_path(self) -> str:
        return str(Path(self.output_dir) / "global.dot")

    def ensure_directories(self):
        """Create output directories if they don't exist."""
        Path(self.contracts_dir).mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_config_file(cls, config_file: str = DEFAULT_CONFIG_FILE) -> "AnalyzerConfig":
        """Load configuration from a txcfg config file."""
        if not Path(config_file).exists():
            # Return default config if file doesn't exist
            return cls()

        with open(config_file, 'r') as f:
            config_data = yaml.safe_load(f) or {}

        analysis = config_data.get('analysis', {})
        output = config_data.get('output', {})

        return cls(
            rpc_url=config_data.get('rpc_url', cls.rpc_url),
            output_dir=output.get('dir', cls.output_dir),
            image_format=output.get('format'),
            dot_path=output.get('dot_path', cls.dot_path),
            symbolic_edges=bool(analysis.get('symbolic_edges', False)),
            jobs=int(analysis.get('jobs', 1)),
            quiet=bool(config_data.get('quiet', False)),
        )

    def save_to_config_file(self, config_file: str = DEFAULT_CONFIG_FILE):
        """Save configuration to a txcfg config file, keeping unrelated keys."""
        config_data = {}
        if Path(config_file).exists():
            with open(config_file, 'r') as f:
                config_data = yaml.safe_load(f) or {}

        config_data['rpc_url'] = self.rpc_url
        config_data.setdefault('output', {}).update({
            'dir': self.output_dir,
            'format': self.image_format,
            'dot_path': self.dot_path,
        })
        config_data.setdefault('analysis', {}).update({
            'symbolic_edges': self.symbolic_edges,
            'jobs': self.jobs,
        })
        config_data['quiet'] = self.quiet

        with open(config_file, 'w') as f:
            yaml.dump(config_data, f, default_flow_style=False, sort_keys=False)
