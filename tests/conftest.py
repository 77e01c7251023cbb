import base64
import os
import tempfile

import pytest

TEST_MNEMONIC = "abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon about"
TEST_ENCRYPTION_KEY = base64.urlsafe_b64encode(b"custody-test-encryption-key".ljust(32, b"0")).decode()


def _set_test_env() -> None:
    db_dir = tempfile.mkdtemp(prefix="custody-test-")
    defaults = {
        "APP_NAME": "Custody Core Test",
        "ENVIRONMENT": "test",
        "AUTO_CREATE_TABLES": "false",
        "DATABASE_URL": f"sqlite:///{os.path.join(db_dir, 'custody.db')}",
        "WALLET_MNEMONIC": TEST_MNEMONIC,
        "KEY_ENCRYPTION_KEY": TEST_ENCRYPTION_KEY,
        "LEDGER_DENOMINATION": "in_kind",
        "CHAIN_SOURCES": "",
        "PRICE_SOURCES": '[{"kind": "static", "prices": {"BTC": "60000", "ETH": "3000", "BNB": "500", "USDT": "1"}}]',
        "RECONCILE_ENABLED": "false",
        "RATE_LIMIT_ENABLED": "false",
        "STAKING_RATES": "",
        "NOTIFICATION_SINK": "console",
        "CORS_ORIGINS": "http://localhost:5173,http://localhost:3000",
    }
    for key, value in defaults.items():
        os.environ.setdefault(key, value)


_set_test_env()


from sqlalchemy.orm import sessionmaker  # noqa: E402

from custody.core.database import Base, build_engine  # noqa: E402
from custody.services.derivation import master_seed_from_mnemonic  # noqa: E402
from custody.utils.cache import clear_cache  # noqa: E402


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'custody.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="session")
def seed():
    return master_seed_from_mnemonic(TEST_MNEMONIC)


@pytest.fixture(autouse=True)
def _clear_provider_cache():
    clear_cache()
    yield
    clear_cache()
