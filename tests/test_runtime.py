import pytest

from susi_auth.service import runtime as runtime_module
from susi_auth.service.runtime import _mask_url_password, get_runtime, reset_runtime_for_tests
from susi_auth.storage.memory import MemoryStore


def test_mask_url_password():
    assert (
        _mask_url_password("postgresql://auth:s3cret@db:5432/susi")
        == "postgresql://auth:***@db:5432/susi"
    )
    assert _mask_url_password("redis://localhost:6379/0") == "redis://localhost:6379/0"
    assert _mask_url_password("") == ""


def test_runtime_is_a_singleton():
    assert get_runtime() is get_runtime()


def test_test_runtime_uses_memory_store_without_redis():
    runtime = get_runtime()
    assert isinstance(runtime.store, MemoryStore)
    assert runtime.store.fs_root is None
    assert runtime.cache is None
    assert runtime.auth.signer is runtime.signer


def test_totp_secrets_encrypted_with_configured_key():
    runtime = get_runtime()
    token = runtime.cipher.encrypt("JBSWY3DPEHPK3PXP")
    assert token != "JBSWY3DPEHPK3PXP"
    assert runtime.cipher.decrypt(token) == "JBSWY3DPEHPK3PXP"


def test_reset_refused_outside_test_mode(monkeypatch):
    monkeypatch.setenv("TEST_MODE", "false")
    with pytest.raises(RuntimeError):
        reset_runtime_for_tests()
    monkeypatch.setenv("TEST_MODE", "true")
    assert reset_runtime_for_tests() is runtime_module.runtime
