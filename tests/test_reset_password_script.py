import importlib.util
from pathlib import Path

import pytest

from lawmakers_auth.service.runtime import get_runtime

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "reset_password.py"


@pytest.fixture
def script():
    spec = importlib.util.spec_from_file_location("reset_password_script", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


async def _verified_user(email):
    runtime = get_runtime()
    user = runtime.store.create_user(email, runtime.passwords.hash("Old-Password-1"), verified=True)
    await runtime.auth.establish_session(user)
    return user


async def test_reset_changes_password_and_revokes(script):
    user = await _verified_user("alice@example.com")
    result = await script.reset_password("alice@example.com", "New-Password-2")
    assert result == {
        "user_id": user.id,
        "email": "alice@example.com",
        "status": "reset",
        "revoked": 1,
    }
    stored = get_runtime().store.get_user(user.id)
    assert get_runtime().passwords.verify("New-Password-2", stored.password_hash)


async def test_revoke_only(script):
    await _verified_user("alice@example.com")
    result = await script.reset_password("alice@example.com", None)
    assert result["status"] == "revoked"
    assert result["revoked"] == 1


async def test_dry_run_changes_nothing(script):
    user = await _verified_user("alice@example.com")
    result = await script.reset_password("alice@example.com", "New-Password-2", dry_run=True)
    assert result["status"] == "dry_run"
    stored = get_runtime().store.get_user(user.id)
    assert get_runtime().passwords.verify("Old-Password-1", stored.password_hash)


async def test_unknown_account(script):
    result = await script.reset_password("nobody@example.com", "New-Password-2")
    assert result["status"] == "not_found"


def test_cli_requires_email(script, monkeypatch):
    monkeypatch.delenv("RESET_EMAIL", raising=False)
    monkeypatch.setattr("sys.argv", ["reset_password.py"])
    with pytest.raises(SystemExit) as excinfo:
        script.main()
    assert excinfo.value.code == 1
