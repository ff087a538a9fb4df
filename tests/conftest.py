import hashlib
import os
import pathlib
import sys

import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import evreg`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from evreg.config import get_config_manager  # noqa: E402
from evreg.registry import EvidenceRegistry  # noqa: E402


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless EVREG_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    run_slow = _env_flag('EVREG_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set EVREG_RUN_SLOW=1 to enable'))


PROVIDER = "0xAAA"
OTHER = "0xBBB"
FILE_DIGEST = hashlib.sha256(b"file-contents").hexdigest()


@pytest.fixture(autouse=True)
def clean_config(monkeypatch):
    """Every test starts from default configuration with no EVREG_* overrides."""
    for name in list(os.environ):
        if name.startswith("EVREG_"):
            monkeypatch.delenv(name)
    get_config_manager().reset()
    yield
    get_config_manager().reset()


@pytest.fixture
def registry():
    return EvidenceRegistry()


@pytest.fixture
def chained_registry():
    return EvidenceRegistry(variant="chained")


@pytest.fixture
def submit(registry):
    """Submit a main evidence with sensible defaults; keyword overrides apply."""
    def _submit(**overrides):
        args = dict(
            header='{"kind": "report"}',
            link=None,
            prior_refs=[],
            content_hash=FILE_DIGEST,
            account=PROVIDER,
            signature=b"\x01\x02",
            payload='{"v": 1}',
            caller=PROVIDER,
        )
        args.update(overrides)
        return registry.submit_evidence(**args)
    return _submit
