import pytest

_CONFIG_ENV = (
    "ACTIVE_NETWORK",
    "RPC_URL",
    "RPC_URL_SEPOLIA",
    "RPC_URL_MAINNET",
    "STAKING_ROUTER_ADDRESS",
    "PRIVATE_KEY",
    "PRIVATE_KEY_RELAYER",
    "STAKING_RELAYER_CONFIG_PATH",
    "STAKING_RELAYER_CONFIG",
    "STAKING_RELAYER_DATA_DIR",
)


def pytest_configure(config):
    config.addinivalue_line("markers", "smoke: mark test as a smoke test")
    config.addinivalue_line("markers", "integration: mark test as integration")


def pytest_collection_modifyitems(config, items):
    for item in items:
        if "smoke" in item.nodeid:
            item.add_marker(pytest.mark.smoke)


@pytest.fixture
def clean_env(monkeypatch):
    """Strip relayer settings from the process environment."""
    for key in _CONFIG_ENV:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch
