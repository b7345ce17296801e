# tests/test_chain.py
import pytest

from kvledger.chain.challenges import ChallengeStore
from kvledger.chain.ledger import UpdateLedger
from kvledger.core.canon import sign_payload_str
from kvledger.core.errors import ChallengeNotFound, ConflictingUpdate, ScopeMismatch
from kvledger.core.types import Scope
from kvledger.storage import MemoryStorage


@pytest.fixture
def scope(keys):
    return Scope(avatar=keys.public_key_hex(), platform="twitter", identity="alice")


@pytest.fixture
def ledger():
    return UpdateLedger(MemoryStorage())


@pytest.fixture
def challenges(ledger, clock):
    return ChallengeStore(ledger.storage, ledger, ttl_seconds=60, clock=clock)


def append_signed(ledger, keys, scope, patch, uuid, created_at=1):
    prev = ledger.head_link(scope)
    payload = sign_payload_str(scope, patch, created_at, uuid, prev)
    return ledger.append(
        scope, uuid=uuid, created_at=created_at, patch=patch,
        signature=keys.sign(payload.encode()), sign_payload=payload, prev=prev,
    )


def test_issue_captures_genesis(challenges, scope, clock):
    ch = challenges.issue(scope, {"a": 1})
    assert ch.prev is None
    assert ch.created_at == clock.now
    assert ch.expires_at == clock.now + 60
    assert ch.sign_payload == sign_payload_str(scope, {"a": 1}, clock.now, ch.uuid, None)


def test_issue_uses_fresh_uuids(challenges, scope):
    uuids = {challenges.issue(scope, {"a": i}).uuid for i in range(20)}
    assert len(uuids) == 20


def test_issue_copies_patch(challenges, scope):
    patch = {"a": {"b": 1}}
    ch = challenges.issue(scope, patch)
    patch["a"]["b"] = 2
    assert ch.patch == {"a": {"b": 1}}


def test_issue_captures_head(challenges, ledger, keys, scope):
    append_signed(ledger, keys, scope, {"a": 1}, "u-0")
    ch = challenges.issue(scope, {"b": 2})
    assert ch.prev == ledger.head_link(scope)
    assert ch.prev is not None


def test_consume_once(challenges, scope):
    ch = challenges.issue(scope, {"a": 1})
    got = challenges.consume(ch.uuid, ch.created_at, scope)
    assert got == ch
    with pytest.raises(ChallengeNotFound):
        challenges.consume(ch.uuid, ch.created_at, scope)


def test_consume_unknown(challenges, scope):
    with pytest.raises(ChallengeNotFound):
        challenges.consume("nope", 0, scope)


def test_consume_expired(challenges, scope, clock):
    ch = challenges.issue(scope, {"a": 1})
    clock.advance(60)
    with pytest.raises(ChallengeNotFound, match="expired"):
        challenges.consume(ch.uuid, ch.created_at, scope)


def test_consume_just_before_expiry(challenges, scope, clock):
    ch = challenges.issue(scope, {"a": 1})
    clock.advance(59)
    assert challenges.consume(ch.uuid, ch.created_at, scope).uuid == ch.uuid


def test_consume_scope_mismatch_keeps_challenge(challenges, scope):
    ch = challenges.issue(scope, {"a": 1})
    other = Scope(scope.avatar, scope.platform, "mallory")
    with pytest.raises(ScopeMismatch):
        challenges.consume(ch.uuid, ch.created_at, other)
    assert challenges.consume(ch.uuid, ch.created_at, scope) == ch


def test_consume_timestamp_mismatch_keeps_challenge(challenges, scope):
    ch = challenges.issue(scope, {"a": 1})
    with pytest.raises(ScopeMismatch):
        challenges.consume(ch.uuid, ch.created_at + 1, scope)
    assert challenges.consume(ch.uuid, ch.created_at, scope) == ch


def test_consume_expired_is_deleted(challenges, scope, clock):
    ch = challenges.issue(scope, {"a": 1})
    clock.advance(60)
    with pytest.raises(ChallengeNotFound):
        challenges.consume(ch.uuid, ch.created_at, scope)
    assert challenges.storage.get_challenge(ch.uuid) is None


def test_issue_purges_expired(challenges, scope, clock):
    old = challenges.issue(scope, {"a": 1})
    clock.advance(120)
    challenges.issue(scope, {"b": 2})
    assert challenges.storage.take_challenge(old.uuid) is None


def test_invalid_ttl(ledger):
    with pytest.raises(ValueError):
        ChallengeStore(ledger.storage, ledger, ttl_seconds=0)


def test_ledger_starts_empty(ledger, scope):
    assert ledger.head_link(scope) is None
    assert ledger.derive(scope) is None
    assert ledger.history(scope) == []


def test_append_links_entries(ledger, keys, scope):
    append_signed(ledger, keys, scope, {"a": 1}, "u-0")
    content = append_signed(ledger, keys, scope, {"b": [1, 2]}, "u-1")

    chain = ledger.history(scope)
    assert [e.sequence for e in chain] == [0, 1]
    assert chain[0].prev is None
    assert chain[1].prev == chain[0].link
    assert content == {"a": 1, "b": [1, 2]}
    assert ledger.derive(scope) == content


def test_append_with_stale_prev_conflicts(ledger, keys, scope):
    append_signed(ledger, keys, scope, {"a": 1}, "u-0")
    payload = sign_payload_str(scope, {"a": 2}, 1, "u-1", None)
    with pytest.raises(ConflictingUpdate):
        ledger.append(
            scope, uuid="u-1", created_at=1, patch={"a": 2},
            signature=keys.sign(payload.encode()), sign_payload=payload, prev=None,
        )
    assert len(ledger.history(scope)) == 1
    assert ledger.derive(scope) == {"a": 1}


def test_rebuild_matches_cache(ledger, keys, scope):
    append_signed(ledger, keys, scope, {"a": {"b": 1}}, "u-0")
    append_signed(ledger, keys, scope, {"a": {"b": None, "c": 2}}, "u-1")
    assert ledger.rebuild(scope) == ledger.derive(scope) == {"a": {"c": 2}}


def test_rebuild_repairs_drifted_cache(ledger, keys, scope):
    append_signed(ledger, keys, scope, {"a": 1}, "u-0")
    ledger.storage.put_content(scope, {"a": "drift"})
    assert ledger.derive(scope) == {"a": "drift"}
    ledger.rebuild(scope, repair=True)
    assert ledger.derive(scope) == {"a": 1}


def test_scopes_are_independent(ledger, keys, scope):
    other = Scope(scope.avatar, "github", "alice")
    append_signed(ledger, keys, scope, {"a": 1}, "u-0")
    append_signed(ledger, keys, other, {"b": 1}, "u-1")
    assert ledger.history(other)[0].prev is None
    assert ledger.scopes_for_avatar(scope.avatar) == [other, scope]
    assert ledger.scopes_for_proof("twitter", "alice") == [scope]
