import os
import shutil
from pathlib import Path

import pytest

TEST_DATA_DIR = Path("data-tests")
LLM_ENV_VARS = (
    "LLM_PROVIDER_URL",
    "LLM_API_KEY",
    "LLM_PROVIDER_FORMAT",
    "LLM_MODEL",
    "LLM_TIMEOUT",
)

# taleweaver.app builds a default app at import time; keep it out of ./data
os.environ["TALEWEAVER_DATA_DIR"] = str(TEST_DATA_DIR)


@pytest.fixture(autouse=True)
def clean_test_env(monkeypatch):
    """Wipe data-tests/ and drop any LLM settings picked up from the shell or .env."""
    if TEST_DATA_DIR.exists():
        shutil.rmtree(TEST_DATA_DIR)
    for name in LLM_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    yield
    # leave data-tests around after tests for inspection; CI can ignore it
