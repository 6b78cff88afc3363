import asyncio
import inspect
import os
import sys
from pathlib import Path

# Env defaults must be in place before anything builds Settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-do-not-use")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use")
os.environ.setdefault("MFA_ENCRYPTION_KEY", "test-mfa-key-for-testing-only")
# Empty REDIS_URL keeps tests on the in-process claim and rate-limit fallbacks
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from mssaccess.config import Settings  # noqa: E402
from mssaccess.service.access import AccessGrantService  # noqa: E402
from mssaccess.service.audit import AuditService  # noqa: E402
from mssaccess.service.auth import AuthService  # noqa: E402
from mssaccess.service.directory import DirectoryService  # noqa: E402
from mssaccess.service.mfa import MFAService  # noqa: E402
from mssaccess.service.passwords import PasswordService  # noqa: E402
from mssaccess.service.runtime import reset_runtime_for_tests  # noqa: E402
from mssaccess.service.tokens import TokenService  # noqa: E402
from mssaccess.storage.memory import MemoryStore  # noqa: E402

STRONG_PASSWORD = "Vault!Key7Zeta"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="unit-access-secret-0123456789abcdef",
        jwt_refresh_secret="unit-refresh-secret-0123456789abcdef",
        mfa_encryption_key="unit-mfa-key",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
        lockout_threshold=5,
        password_history_size=5,
        reset_max_attempts_per_hour=3,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def audit(store, settings):
    return AuditService(store, settings)


@pytest.fixture
def tokens(store, settings):
    return TokenService(store, None, settings)


@pytest.fixture
def passwords(store, settings, audit, tokens):
    return PasswordService(store, None, settings, audit, sessions=tokens)


@pytest.fixture
def mfa(store, settings, audit):
    return MFAService(store, None, settings, audit)


@pytest.fixture
def access(store, audit):
    return AccessGrantService(store, audit)


@pytest.fixture
def directory(store, audit, passwords, tokens):
    return DirectoryService(store, audit, passwords, tokens)


@pytest.fixture
def auth(store, tokens, passwords, mfa, audit):
    return AuthService(store, tokens, passwords, mfa, audit)


@pytest.fixture
def provider(directory):
    return directory.create_organization("Acme MSSP", "mss_provider")


@pytest.fixture
def customer(directory):
    return directory.create_organization("Globex", "customer", domain="globex.example")


@pytest.fixture
def super_admin(directory, provider):
    return directory.create_user(
        provider.id, "root@acme.example", "Ada", "Root", "super_admin", STRONG_PASSWORD
    )


@pytest.fixture
def technician(directory, provider):
    return directory.create_user(
        provider.id, "tina@acme.example", "Tina", "Tech", "technician", STRONG_PASSWORD
    )


@pytest.fixture
def second_technician(directory, provider):
    return directory.create_user(
        provider.id, "sam@acme.example", "Sam", "Second", "technician", STRONG_PASSWORD
    )


@pytest.fixture
def customer_user(directory, customer):
    return directory.create_user(
        customer.id, "bob@globex.example", "Bob", "Basic", "basic_user", STRONG_PASSWORD
    )


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
