"""scripts/bootstrap_admin.py against an in-memory runtime."""

import importlib.util
from pathlib import Path

import pytest

from iamcore.service import runtime as runtime_module
from iamcore.service.errors import WeakPasswordError
from iamcore.service.runtime import Runtime

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


def _load_script():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def memory_runtime(settings, monkeypatch):
    rt = Runtime(
        settings.model_copy(
            update={
                "use_memory_store": True,
                "persist_memory_store": False,
                "redis_url": None,
                "test_mode": True,
            }
        )
    )
    monkeypatch.setattr(runtime_module, "runtime", rt)
    return rt


class TestBootstrapAdmin:
    async def test_creates_first_admin(self, memory_runtime):
        script = _load_script()
        result = await script.bootstrap_admin("root@example.com", "Secur3!Admin")
        assert result["status"] == "created"
        account = memory_runtime.store.get_account(result["account_id"])
        assert "super_admin" in account.roles

    async def test_promotes_existing_account(self, memory_runtime):
        script = _load_script()
        await memory_runtime.auth.register("first@example.com", "Secur3!Pass")
        registered = await memory_runtime.auth.register("ops@example.com", "Secur3!Pass")
        result = await script.bootstrap_admin("ops@example.com", "ignored", role="admin")
        assert result["status"] == "promoted"
        assert "admin" in memory_runtime.store.get_account(registered.user.id).roles
        again = await script.bootstrap_admin("ops@example.com", "ignored", role="admin")
        assert again["status"] == "already_admin"

    async def test_dry_run_creates_nothing(self, memory_runtime):
        script = _load_script()
        result = await script.bootstrap_admin("dry@example.com", "Secur3!Admin", dry_run=True)
        assert result["status"] == "dry_run"
        assert memory_runtime.store.get_account_by_email("dry@example.com") is None

    async def test_weak_password_rejected(self, memory_runtime):
        script = _load_script()
        with pytest.raises(WeakPasswordError):
            await script.bootstrap_admin("weak@example.com", "weak")
