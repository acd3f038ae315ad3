from typing import Optional
from uuid import UUID, uuid4

from loguru import logger

from ledger.errors import InvalidReasonError, InvalidStateTransitionError, UserBlockedError
from ledger.storage import InMemoryStorage, utc_now

from .models import BlockedAffiliateCode, ModerationStatus, SuspiciousUser, UniversityBlock


def _lock_key(subject_id: UUID) -> str:
    return f"moderation:{subject_id}"


def _code_lock_key(code: str) -> str:
    return f"affiliate_code:{code}"


class ModerationService:
    """Guards the ledger's inputs.

    Suspicion heuristics (referral velocity, conversion rate) are computed
    elsewhere; this service only records their outcome and the admin actions
    taken on it. Blocking never touches balances or past transactions.
    """

    def __init__(self, storage: Optional[InMemoryStorage] = None):
        self.storage = storage or InMemoryStorage()

    def flag_suspicious_user(
        self,
        user_id: UUID,
        flags: Optional[list[str]] = None,
        affiliate_code: Optional[str] = None,
    ) -> SuspiciousUser:
        with self.storage.transaction(_lock_key(user_id)):
            now = utc_now()
            record = self.storage.moderation.get_user(user_id) or {
                "user_id": user_id,
                "affiliate_code": None,
                "status": ModerationStatus.ACTIVE,
                "flags": [],
                "flagged_at": None,
            }
            merged = list(record["flags"])
            for flag in flags or []:
                if flag not in merged:
                    merged.append(flag)

            record.update(
                flags=merged,
                affiliate_code=affiliate_code or record["affiliate_code"],
                flagged_at=now,
                updated_at=now,
            )
            # a suspended user stays suspended; flagging only annotates
            if record["status"] != ModerationStatus.SUSPENDED:
                record["status"] = ModerationStatus.FLAGGED

            self.storage.moderation.put_user(record)

        logger.info("Flagged suspicious user", user_id=str(user_id), flags=merged)
        return SuspiciousUser(**record)

    def get_user_status(self, user_id: UUID) -> ModerationStatus:
        record = self.storage.moderation.get_user(user_id)
        return ModerationStatus(record["status"]) if record else ModerationStatus.ACTIVE

    def list_suspicious_users(self, status: Optional[ModerationStatus] = None) -> list[SuspiciousUser]:
        rows = self.storage.moderation.list_users(status=status)
        users = [SuspiciousUser(**row) for row in rows]
        users.sort(key=lambda u: u.updated_at, reverse=True)
        return users

    def block(
        self,
        user_id: UUID,
        admin_id: UUID,
        reason: str,
        affiliate_code: Optional[str] = None,
    ) -> SuspiciousUser:
        if not reason or not reason.strip():
            raise InvalidReasonError("A reason is required to block a user")
        reason = reason.strip()

        with self.storage.transaction(_lock_key(user_id)):
            now = utc_now()
            record = self.storage.moderation.get_user(user_id) or {
                "user_id": user_id,
                "affiliate_code": None,
                "flags": [],
                "flagged_at": None,
            }
            code = affiliate_code or record.get("affiliate_code")
            record.update(
                status=ModerationStatus.SUSPENDED,
                affiliate_code=code,
                updated_at=now,
            )

            # serializes blocks naming the same code across users
            with self.storage.transaction(*([_code_lock_key(code)] if code else [])):
                if code:
                    blocked = self.storage.moderation.get_code(code)
                    if blocked and blocked["user_id"] != user_id:
                        logger.warning(
                            "Affiliate code already blocked for another user",
                            affiliate_code=code, user_id=str(user_id), blocked_user_id=str(blocked["user_id"]),
                        )
                        raise InvalidStateTransitionError(
                            f"Affiliate code {code} is already blocked for user {blocked['user_id']}"
                        )

                self.storage.moderation.put_user(record)
                if code:
                    self.storage.moderation.put_code({
                        "id": uuid4(),
                        "code": code,
                        "user_id": user_id,
                        "blocked_by": admin_id,
                        "blocked_at": now,
                        "reason": reason,
                    })

                self.storage.audit.record(
                    "block_user", "user", user_id, admin_id, reason=reason, affiliate_code=code,
                )

        logger.info("Blocked user", user_id=str(user_id), admin_id=str(admin_id), affiliate_code=code)
        return SuspiciousUser(**record)

    def unblock(self, user_id: UUID, admin_id: UUID) -> SuspiciousUser:
        with self.storage.transaction(_lock_key(user_id)):
            record = self.storage.moderation.get_user(user_id)
            if not record or record["status"] != ModerationStatus.SUSPENDED:
                raise InvalidStateTransitionError(f"User {user_id} is not blocked")

            record.update(status=ModerationStatus.ACTIVE, updated_at=utc_now())
            self.storage.moderation.put_user(record)
            released = [row["code"] for row in self.storage.moderation.codes_for_user(user_id)]
            for code in released:
                self.storage.moderation.delete_code(code)

            self.storage.audit.record("unblock_user", "user", user_id, admin_id, released_codes=released)

        logger.info("Unblocked user", user_id=str(user_id), admin_id=str(admin_id))
        return SuspiciousUser(**record)

    def is_blocked(self, user_id: UUID) -> bool:
        return self.get_user_status(user_id) == ModerationStatus.SUSPENDED

    def is_code_blocked(self, code: str) -> bool:
        return self.storage.moderation.get_code(code) is not None

    def ensure_not_blocked(self, user_id: UUID) -> None:
        if self.is_blocked(user_id):
            logger.warning("Rejected operation from blocked user", user_id=str(user_id))
            raise UserBlockedError(f"User {user_id} is blocked from Matricula Rewards")

    def list_blocked_codes(self) -> list[BlockedAffiliateCode]:
        codes = [BlockedAffiliateCode(**row) for row in self.storage.moderation.list_codes()]
        codes.sort(key=lambda c: c.blocked_at, reverse=True)
        return codes

    def block_university(self, university_id: UUID, admin_id: UUID, reason: str) -> UniversityBlock:
        if not reason or not reason.strip():
            raise InvalidReasonError("A reason is required to block a university")

        with self.storage.transaction(_lock_key(university_id)):
            record = {
                "university_id": university_id,
                "blocked_by": admin_id,
                "blocked_at": utc_now(),
                "reason": reason.strip(),
            }
            self.storage.moderation.put_university_block(record)
            self.storage.audit.record("block_university", "university", university_id, admin_id, reason=reason.strip())

        logger.info("Blocked university from rewards", university_id=str(university_id))
        return UniversityBlock(**record)

    def unblock_university(self, university_id: UUID, admin_id: UUID) -> None:
        with self.storage.transaction(_lock_key(university_id)):
            if self.storage.moderation.get_university_block(university_id) is None:
                raise InvalidStateTransitionError(f"University {university_id} is not blocked")
            self.storage.moderation.delete_university_block(university_id)
            self.storage.audit.record("unblock_university", "university", university_id, admin_id)

        logger.info("Unblocked university", university_id=str(university_id))

    def is_university_blocked(self, university_id: UUID) -> bool:
        return self.storage.moderation.get_university_block(university_id) is not None
