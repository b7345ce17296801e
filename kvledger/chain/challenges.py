# kvledger/chain/challenges.py
import copy
import time
import uuid as uuidlib
from typing import Any, Callable, Dict

from kvledger.chain.ledger import UpdateLedger
from kvledger.core.canon import sign_payload_str
from kvledger.core.errors import ChallengeNotFound, ScopeMismatch
from kvledger.core.types import Challenge, Scope
from kvledger.storage import StorageBackend
from kvledger.telemetry import get_logger

log = get_logger(__name__)

Clock = Callable[[], int]


def unix_now() -> int:
    return int(time.time())


class ChallengeStore:
    """
    Issues and consumes single-use challenges.

    Consumption ends in one conditional delete in the backend, so two
    concurrent commits with the same uuid cannot both get it.
    """

    def __init__(
        self,
        storage: StorageBackend,
        ledger: UpdateLedger,
        ttl_seconds: int = 300,
        clock: Clock = unix_now,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.storage = storage
        self.ledger = ledger
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def issue(self, scope: Scope, patch: Dict[str, Any]) -> Challenge:
        now = self.clock()
        purged = self.storage.purge_challenges(now)
        if purged:
            log.debug("challenges_purged", count=purged)

        nonce = str(uuidlib.uuid4())
        prev = self.ledger.head_link(scope)
        challenge = Challenge(
            uuid=nonce,
            created_at=now,
            expires_at=now + self.ttl_seconds,
            scope=scope,
            patch=copy.deepcopy(patch),
            sign_payload=sign_payload_str(scope, patch, now, nonce, prev),
            prev=prev,
        )
        self.storage.save_challenge(challenge)
        return challenge

    def consume(self, uuid: str, created_at: int, scope: Scope) -> Challenge:
        """
        Check the caller's parameters against the stored challenge, then take
        it. A mismatch leaves the challenge pending for the rightful caller;
        an expired challenge is deleted on sight.
        """
        challenge = self.storage.get_challenge(uuid)
        if challenge is None:
            raise ChallengeNotFound(f"no pending challenge {uuid}")
        if challenge.is_expired(self.clock()):
            self.storage.take_challenge(uuid)
            raise ChallengeNotFound(f"challenge {uuid} expired")
        if challenge.scope != scope:
            raise ScopeMismatch("scope differs from the one the challenge was issued for")
        if challenge.created_at != created_at:
            raise ScopeMismatch("created_at differs from the issued challenge")

        # conditional delete: of several concurrent consumers only one gets a row
        taken = self.storage.take_challenge(uuid, scope=scope, created_at=created_at)
        if taken is None:
            raise ChallengeNotFound(f"challenge {uuid} was already consumed")
        return taken
