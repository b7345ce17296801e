# kvledger/verify/auditor.py
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from kvledger.chain.ledger import UpdateLedger
from kvledger.core.canon import sign_payload_str
from kvledger.core.errors import KVError
from kvledger.core.merge import fold_patches
from kvledger.core.types import LedgerEntry, Scope
from kvledger.crypto.verifier import SignatureVerifier


@dataclass(frozen=True)
class VerificationFailure:
    """One broken check. index is the chain position, -1 when the chain could not be read."""
    index: int
    message: str
    category: str  # scope | sequence | chain | payload | signature | content | storage


@dataclass
class VerificationResult:
    is_valid: bool
    message: str = ""
    failures: List[VerificationFailure] = field(default_factory=list)

    def fail(self, index: int, message: str, category: str) -> None:
        self.failures.append(VerificationFailure(index, message, category))
        self.is_valid = False

    @property
    def first_failure(self) -> Optional[VerificationFailure]:
        return self.failures[0] if self.failures else None

    @property
    def categories(self) -> List[str]:
        """Distinct failure categories in the order they were first hit."""
        return list(dict.fromkeys(f.category for f in self.failures))

    def __bool__(self) -> bool:
        return self.is_valid

    def __str__(self) -> str:
        if self.is_valid:
            return self.message or "valid"
        head = f"invalid: {len(self.failures)} failure(s) in {', '.join(self.categories)}"
        return "\n".join([head] + [f"  [{f.index}] {f.category}: {f.message}" for f in self.failures])


class ChainAuditor:
    """
    Offline re-verification of a stored scope.
    Re-derives every sign payload, re-checks every signature against the
    avatar key, and re-folds the chain to compare with the cached content.
    """

    def __init__(self, verifier: SignatureVerifier):
        self.verifier = verifier

    def audit(
        self,
        scope: Scope,
        chain: List[LedgerEntry],
        cached_content: Optional[Dict[str, Any]] = None,
    ) -> VerificationResult:
        if not chain:
            return VerificationResult(True, "Empty chain is valid")

        result = VerificationResult(True)

        # 1. Scope & sequence consistency
        for i, entry in enumerate(chain):
            if entry.scope != scope:
                result.fail(i, f"Scope mismatch: {entry.scope.platform}:{entry.scope.identity}", "scope")
            if entry.sequence != i:
                result.fail(i, f"Sequence mismatch: expected {i}, got {entry.sequence}", "sequence")

        if not result.is_valid:
            return result

        # 2. prev links
        if chain[0].prev is not None:
            result.fail(0, "First entry does not start at genesis", "chain")
        for i in range(1, len(chain)):
            if chain[i].prev != chain[i - 1].link:
                result.fail(i, "prev does not match previous entry signature", "chain")

        # 3. Payload + signature
        for i, entry in enumerate(chain):
            try:
                payload = sign_payload_str(
                    entry.scope, entry.patch, entry.created_at, entry.uuid, entry.prev
                )
            except KVError as e:
                result.fail(i, f"Cannot canonicalize stored patch: {e.message}", "payload")
                continue
            if payload != entry.sign_payload:
                result.fail(i, "Stored sign payload does not match re-derived payload", "payload")
            if not self.verifier.verify(scope.avatar, payload.encode("utf-8"), entry.signature):
                result.fail(i, "Invalid signature", "signature")

        # 4. Cached content
        if cached_content is not None:
            folded = fold_patches(e.patch for e in chain)
            if folded != cached_content:
                result.fail(len(chain) - 1, "Cached content differs from folded chain", "content")

        result.message = "Valid chain" if result.is_valid else f"Failed with {len(result.failures)} issues"
        return result

    def audit_ledger(self, scope: Scope, ledger: UpdateLedger) -> VerificationResult:
        """Load from storage and audit; load failures become a "storage" failure."""
        try:
            chain = ledger.history(scope)
            cached = ledger.derive(scope)
        except KVError as e:
            return VerificationResult(
                False,
                f"Failed to load scope from storage: {e.message}",
                [VerificationFailure(-1, e.message, "storage")],
            )
        return self.audit(scope, chain, cached)
