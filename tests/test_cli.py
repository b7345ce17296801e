# tests/test_cli.py
import json
import sqlite3
from pathlib import Path
from typing import Generator

import pytest
from typer.testing import CliRunner

from kvledger.cli.main import app
from kvledger.crypto.keys import AvatarKeyPair

runner = CliRunner()


@pytest.fixture(autouse=True)
def quiet_logs(monkeypatch):
    monkeypatch.setenv("KV_LOG_LEVEL", "ERROR")


@pytest.fixture
def temp_db(tmp_path: Path) -> Generator[Path, None, None]:
    """Temporary DB file + auto-cleanup."""
    db_path = tmp_path / "test-cli.db"
    yield db_path
    if db_path.exists():
        db_path.unlink()


def cli_update(db: Path, keys: AvatarKeyPair, platform: str, identity: str, patch: dict) -> dict:
    avatar = keys.public_key_hex()
    result = runner.invoke(app, [
        "--db", str(db), "request", avatar, platform, identity, "--patch", json.dumps(patch),
    ])
    assert result.exit_code == 0, result.stdout
    challenge = json.loads(result.stdout)

    result = runner.invoke(app, ["sign", challenge["sign_payload"], "--key", keys.private_key_hex()])
    assert result.exit_code == 0, result.stdout
    signature = result.stdout.strip()

    result = runner.invoke(app, [
        "--db", str(db), "commit", avatar, platform, identity,
        "--uuid", challenge["uuid"],
        "--created-at", str(challenge["created_at"]),
        "--signature", signature,
        "--patch", json.dumps(patch),
    ])
    assert result.exit_code == 0, result.stdout
    return json.loads(result.stdout)


@pytest.fixture
def populated_db(temp_db: Path, keys: AvatarKeyPair) -> Path:
    """DB with two committed updates in the avatar's nextid scope."""
    avatar = keys.public_key_hex()
    cli_update(temp_db, keys, "nextid", avatar, {"this": "is", "a": "sample"})
    cli_update(temp_db, keys, "nextid", avatar, {"a": None, "tags": ["x"]})
    return temp_db


def test_keygen_outputs_usable_keys():
    result = runner.invoke(app, ["keygen"])
    assert result.exit_code == 0
    data = json.loads(result.stdout)
    restored = AvatarKeyPair.from_private_hex(data["private_key"])
    assert restored.public_key_hex() == data["avatar"]
    assert restored.public_key_hex(compressed=True) == data["avatar_compressed"]


def test_request_sign_commit_flow(populated_db: Path, keys: AvatarKeyPair):
    result = runner.invoke(app, ["--db", str(populated_db), "show", keys.public_key_hex(compressed=True)])
    assert result.exit_code == 0
    view = json.loads(result.stdout)
    assert view["avatar"] == keys.public_key_hex()
    assert view["proofs"][0]["content"] == {"this": "is", "tags": ["x"]}


def test_commit_with_bad_signature_fails(temp_db: Path, keys: AvatarKeyPair):
    avatar = keys.public_key_hex()
    result = runner.invoke(app, [
        "--db", str(temp_db), "request", avatar, "nextid", avatar, "--patch", '{"a": 1}',
    ])
    challenge = json.loads(result.stdout)

    result = runner.invoke(app, [
        "--db", str(temp_db), "commit", avatar, "nextid", avatar,
        "--uuid", challenge["uuid"],
        "--created-at", str(challenge["created_at"]),
        "--signature", AvatarKeyPair.generate().sign_b64(challenge["sign_payload"].encode()),
        "--patch", '{"a": 1}',
    ])
    assert result.exit_code == 1
    assert "signature_invalid" in result.stdout


def test_request_rejects_invalid_json(temp_db: Path, keys: AvatarKeyPair):
    avatar = keys.public_key_hex()
    result = runner.invoke(app, ["--db", str(temp_db), "request", avatar, "nextid", avatar, "--patch", "{nope"])
    assert result.exit_code == 1
    assert "not valid json" in result.stdout.lower()


def test_show_no_db(tmp_path: Path, keys: AvatarKeyPair):
    result = runner.invoke(app, ["--db", str(tmp_path / "missing.db"), "show", keys.public_key_hex()])
    assert result.exit_code == 1
    assert "not found" in result.stdout.lower()
    assert "to get started" in result.stdout.lower()


def test_show_unknown_avatar(populated_db: Path):
    result = runner.invoke(app, ["--db", str(populated_db), "show", AvatarKeyPair.generate().public_key_hex()])
    assert result.exit_code == 0
    assert "no content found" in result.stdout.lower()


def test_lookup(populated_db: Path, keys: AvatarKeyPair):
    result = runner.invoke(app, ["lookup", "nextid", keys.public_key_hex(), "--db", str(populated_db)])
    assert result.exit_code == 0
    values = json.loads(result.stdout)["values"]
    assert values[0]["avatar"] == keys.public_key_hex()


def test_scopes_lists_data(populated_db: Path):
    result = runner.invoke(app, ["scopes", "--db", str(populated_db)])
    assert result.exit_code == 0
    assert "Stored Scopes" in result.stdout
    assert "nextid" in result.stdout
    assert "2" in result.stdout


def test_history_shows_entries(populated_db: Path, keys: AvatarKeyPair):
    avatar = keys.public_key_hex()
    result = runner.invoke(app, ["history", avatar, "nextid", avatar, "--db", str(populated_db), "--limit", "5"])
    assert result.exit_code == 0
    assert "sample" in result.stdout
    assert "tags" in result.stdout


def test_verify_valid_scope(populated_db: Path, keys: AvatarKeyPair):
    avatar = keys.public_key_hex()
    result = runner.invoke(app, ["verify", avatar, "nextid", avatar, "--db", str(populated_db)])
    assert result.exit_code == 0
    assert "valid" in result.stdout.lower()


def test_verify_detects_tampering(populated_db: Path, keys: AvatarKeyPair):
    conn = sqlite3.connect(populated_db)
    conn.execute("UPDATE entries SET patch_json = REPLACE(patch_json, 'sample', 'forged') WHERE sequence = 0")
    conn.commit()
    conn.close()

    avatar = keys.public_key_hex()
    result = runner.invoke(app, ["verify", avatar, "nextid", avatar, "--db", str(populated_db)])
    assert result.exit_code == 1
    assert "signature" in result.stdout.lower()


def test_verify_repairs_cache(populated_db: Path, keys: AvatarKeyPair):
    conn = sqlite3.connect(populated_db)
    conn.execute("UPDATE heads SET content_json = '{}'")
    conn.commit()
    conn.close()

    avatar = keys.public_key_hex()
    result = runner.invoke(app, ["verify", avatar, "nextid", avatar, "--db", str(populated_db)])
    assert result.exit_code == 1
    assert "content" in result.stdout.lower()

    result = runner.invoke(app, ["verify", avatar, "nextid", avatar, "--repair", "--db", str(populated_db)])
    assert result.exit_code == 0
    assert "rebuilt" in result.stdout.lower()


def test_verify_missing_scope(populated_db: Path, keys: AvatarKeyPair):
    avatar = keys.public_key_hex()
    result = runner.invoke(app, ["verify", avatar, "twitter", "nobody", "--db", str(populated_db)])
    assert result.exit_code == 1
    assert "no entries" in result.stdout.lower()


def test_export_creates_jsonl(populated_db: Path, keys: AvatarKeyPair, tmp_path: Path):
    output_file = tmp_path / "export-test.jsonl"
    avatar = keys.public_key_hex()

    result = runner.invoke(app, [
        "export", avatar, "nextid", avatar,
        "--db", str(populated_db),
        "--output", str(output_file),
    ])

    assert result.exit_code == 0
    assert "Exported 2 entries" in result.stdout
    with open(output_file, "r", encoding="utf-8") as f:
        lines = [json.loads(line) for line in f if line.strip()]
    assert len(lines) == 2
    assert lines[0]["prev"] is None
    assert lines[1]["prev"] == lines[0]["signature"]
