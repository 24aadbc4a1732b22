import pytest
import yaml

from txcfg.config import AnalyzerConfig


def test_defaults_when_file_missing(tmp_path):
    config = AnalyzerConfig.from_config_file(str(tmp_path / "missing.yaml"))
    assert config == AnalyzerConfig()
    assert config.rpc_url == "http://localhost:8545"
    assert config.global_dot_path.endswith("global.dot")


def test_save_and_load(tmp_path):
    path = tmp_path / "txcfg.config.yaml"
    AnalyzerConfig(rpc_url="http://node:8545", output_dir="graphs", image_format="svg",
                   symbolic_edges=True, jobs=4).save_to_config_file(str(path))

    loaded = AnalyzerConfig.from_config_file(str(path))
    assert loaded.rpc_url == "http://node:8545"
    assert loaded.output_dir == "graphs"
    assert loaded.image_format == "svg"
    assert loaded.symbolic_edges
    assert loaded.jobs == 4


def test_save_keeps_other_keys(tmp_path):
    path = tmp_path / "txcfg.config.yaml"
    path.write_text(yaml.dump({"project": "demo", "output": {"theme": "dark"}}))
    AnalyzerConfig().save_to_config_file(str(path))

    data = yaml.safe_load(path.read_text())
    assert data["project"] == "demo"
    assert data["output"]["theme"] == "dark"
    assert data["output"]["dir"] == "./txcfg-out"


def test_invalid_values():
    with pytest.raises(ValueError):
        AnalyzerConfig(image_format="gif")
    with pytest.raises(ValueError):
        AnalyzerConfig(jobs=0)
