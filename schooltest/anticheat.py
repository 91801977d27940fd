"""
Weighted suspicion scoring for logins and registrations.

Signals add up independently:

    fingerprint shared with 2+ other accounts   +50
    fingerprint shared with 1 other account     +30
    other user ids stored in this browser       +25
    2+ accounts created here in the last 24h    +20  (new accounts only)
    device signal key seen with another user     +5

A score of SUSPICION_THRESHOLD or more flags the account, and the accounts
sharing its fingerprint are raised to the same score when theirs is lower.
Scores only go up here; clearing a flag is a separate admin action.

The registries are plain read/modify/write stores. Two devices reporting the
same fingerprint at the same moment can both miss each other (last writer
wins on the user list); that is accepted rather than locked against.
"""
import logging
import time
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

from schooltest.schemas import RiskRecord, RiskResult, RiskVerdict

logger = logging.getLogger(__name__)

SUSPICION_THRESHOLD = 50

SHARED_FINGERPRINT_MANY = 50
SHARED_FINGERPRINT_ONE = 30
LOCAL_DEVICE_USERS = 25
RAPID_ACCOUNT_CREATION = 20
DEVICE_SIGNAL_MATCH = 5

CREATION_WINDOW_MS = 24 * 60 * 60 * 1000


class UserRegistry(ABC):
    """Keyed lists of user ids (fingerprint → users, device signal key → users)"""

    @abstractmethod
    async def users(self, key: str) -> List[str]:
        ...

    @abstractmethod
    async def add_user(self, key: str, user_id: str) -> List[str]:
        """Associate user_id with key and return the updated list."""
        ...


class RiskBoard(ABC):
    """Per-user suspicion records"""

    @abstractmethod
    async def get(self, user_id: str) -> Optional[RiskRecord]:
        ...

    @abstractmethod
    async def put(self, user_id: str, record: RiskRecord) -> None:
        ...


class MemoryUserRegistry(UserRegistry):
    def __init__(self, initial: Optional[Dict[str, Iterable[str]]] = None):
        self._users: Dict[str, List[str]] = {key: list(ids) for key, ids in (initial or {}).items()}

    async def users(self, key: str) -> List[str]:
        return list(self._users.get(key, []))

    async def add_user(self, key: str, user_id: str) -> List[str]:
        ids = self._users.setdefault(key, [])
        if user_id not in ids:
            ids.append(user_id)
        return list(ids)


class MemoryRiskBoard(RiskBoard):
    def __init__(self, initial: Optional[Dict[str, RiskRecord]] = None):
        self._records: Dict[str, RiskRecord] = dict(initial or {})

    async def get(self, user_id: str) -> Optional[RiskRecord]:
        return self._records.get(user_id)

    async def put(self, user_id: str, record: RiskRecord) -> None:
        self._records[user_id] = record


def is_suspicious(score: int) -> bool:
    return score >= SUSPICION_THRESHOLD


async def compute_risk(user_id: str, fingerprint_hash: str, is_new_account: bool,
                       fingerprint_registry: UserRegistry, local_device_history: Iterable[str],
                       device_signal_registry: UserRegistry, account_creation_history: Iterable[int],
                       signal_key: Optional[str] = None, now: Optional[int] = None) -> RiskResult:
    """Score one login/registration event; reads the registries but never writes them."""
    now = now if now is not None else int(time.time() * 1000)
    score = 0
    reasons: List[str] = []

    if fingerprint_hash:
        fingerprint_users = await fingerprint_registry.users(fingerprint_hash)
        others = {uid for uid in fingerprint_users if uid != user_id}
        if len(others) >= 2:
            score += SHARED_FINGERPRINT_MANY
            reasons.append(f"shared_fingerprint:{len(others)}")
        elif len(others) == 1:
            score += SHARED_FINGERPRINT_ONE
            reasons.append("shared_fingerprint:1")

    local_others = {uid for uid in local_device_history or [] if uid and uid != user_id}
    if local_others:
        score += LOCAL_DEVICE_USERS
        reasons.append(f"local_device_users:{len(local_others)}")

    if is_new_account:
        recent = [ts for ts in account_creation_history or [] if now - ts < CREATION_WINDOW_MS]
        if len(recent) > 1:
            score += RAPID_ACCOUNT_CREATION
            reasons.append(f"rapid_account_creation:{len(recent)}")

    if signal_key:
        signal_users = await device_signal_registry.users(signal_key)
        if any(uid != user_id for uid in signal_users):
            score += DEVICE_SIGNAL_MATCH
            reasons.append("device_signal_match")

    return RiskResult(score=score, reasons=reasons)


async def _raise_to(board: RiskBoard, user_id: str, score: int, reasons: List[str]) -> bool:
    """Store the score for user_id unless an equal or higher one is already recorded."""
    existing = await board.get(user_id)
    if existing is not None and existing.score >= score:
        return False
    await board.put(user_id, RiskRecord(score=score, suspicious=is_suspicious(score), reasons=list(reasons)))
    return True


async def check_device(user_id: str, fingerprint_hash: str, is_new_account: bool,
                       fingerprint_registry: UserRegistry, local_device_history: Iterable[str],
                       device_signal_registry: UserRegistry, account_creation_history: Iterable[int],
                       board: RiskBoard, signal_key: Optional[str] = None,
                       now: Optional[int] = None) -> RiskVerdict:
    """
    Run the full anti-cheat step for a login or registration: score the event
    against the registries as they stood before it, register the user under
    the fingerprint and signal key, then record and propagate the score.
    """
    risk = await compute_risk(
        user_id, fingerprint_hash, is_new_account,
        fingerprint_registry, local_device_history,
        device_signal_registry, account_creation_history,
        signal_key=signal_key, now=now,
    )

    linked: List[str] = []
    if fingerprint_hash:
        linked = [uid for uid in await fingerprint_registry.add_user(fingerprint_hash, user_id) if uid != user_id]
    if signal_key:
        await device_signal_registry.add_user(signal_key, user_id)

    await _raise_to(board, user_id, risk.score, risk.reasons)

    suspicious = is_suspicious(risk.score)
    escalated: List[str] = []
    if suspicious:
        logger.info(f"User {user_id} flagged with score {risk.score}: {', '.join(risk.reasons)}")
        for other_id in linked:
            if await _raise_to(board, other_id, risk.score, risk.reasons):
                escalated.append(other_id)
        if escalated:
            logger.info(f"Escalated linked accounts {escalated} to score {risk.score}")

    return RiskVerdict(
        score=risk.score,
        reasons=risk.reasons,
        suspicious=suspicious,
        fingerprint=fingerprint_hash,
        escalated=escalated,
    )


async def clear_suspicion(board: RiskBoard, user_id: str) -> RiskRecord:
    """Administrative reset of a user's flag and score"""
    record = RiskRecord(score=0, suspicious=False, reasons=[])
    await board.put(user_id, record)
    logger.info(f"Suspicion cleared for user {user_id}")
    return record
