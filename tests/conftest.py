import sys
from pathlib import Path

import pytest


ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from qos_library import ConcurrencyController, QosConfig, load_config


@pytest.fixture
def qos_config(tmp_path: Path) -> QosConfig:
    return load_config(
        env={
            "QOS_HUD_HOME": str(tmp_path / "qos"),
            "CODEX_HOME": str(tmp_path / "codex"),
            "QOS_HUD_GEMINI_HOME": str(tmp_path / "gemini"),
        }
    )


@pytest.fixture
def controller(qos_config: QosConfig) -> ConcurrencyController:
    return ConcurrencyController(qos_config)
