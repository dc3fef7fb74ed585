from dataclasses import dataclass

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from drive_service.errors import QuotaExceeded
from drive_service.models import Owner


@dataclass(frozen=True)
class QuotaSnapshot:
    used: int
    reserved: int
    limit: int

    @property
    def available(self) -> int:
        return max(0, self.limit - self.used - self.reserved)

    @property
    def percentage(self) -> int:
        if self.limit <= 0:
            return 100
        return round(self.used / self.limit * 100)


class QuotaLedger:
    """Per-owner ``used``/``reserved``/``limit`` counters.

    Bytes are reserved before any expensive work and moved into ``used`` in the
    same transaction that writes the file record. Each mutation is a single
    conditional UPDATE, so concurrent uploads of one owner cannot overshoot.
    """

    def __init__(self, default_limit: int) -> None:
        self.default_limit = default_limit

    def ensure_owner(self, db: Session, owner_id: str) -> Owner:
        owner = db.get(Owner, owner_id)
        if owner is not None:
            return owner
        db.add(Owner(id=owner_id, storage_limit=self.default_limit))
        try:
            db.commit()
        except IntegrityError:
            # Another request created the row first.
            db.rollback()
        return db.scalars(select(Owner).where(Owner.id == owner_id)).one()

    def snapshot(self, db: Session, owner_id: str) -> QuotaSnapshot:
        owner = self.ensure_owner(db, owner_id)
        db.refresh(owner)
        return QuotaSnapshot(used=owner.storage_used, reserved=owner.storage_reserved, limit=owner.storage_limit)

    def reserve(self, db: Session, owner_id: str, size: int, *, upload_id: str | None = None) -> None:
        self.ensure_owner(db, owner_id)
        result = db.execute(
            update(Owner)
            .where(
                Owner.id == owner_id,
                Owner.storage_used + Owner.storage_reserved + size <= Owner.storage_limit,
            )
            .values(storage_reserved=Owner.storage_reserved + size)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount != 1:
            snapshot = self.snapshot(db, owner_id)
            raise QuotaExceeded(
                f"storage limit exceeded: {snapshot.used} used, {snapshot.reserved} reserved, "
                f"{snapshot.limit} limit, {size} requested",
                upload_id=upload_id,
            )

    def release(self, db: Session, owner_id: str, size: int) -> None:
        db.execute(
            update(Owner)
            .where(Owner.id == owner_id)
            .values(storage_reserved=_floor_subtract(Owner.storage_reserved, size))
            .execution_options(synchronize_session=False)
        )
        db.commit()

    def apply_commit(self, db: Session, owner_id: str, reserved: int, actual: int) -> None:
        """Move a reservation into ``used``. Does not commit; the caller owns the transaction."""
        db.execute(
            update(Owner)
            .where(Owner.id == owner_id)
            .values(
                storage_used=Owner.storage_used + actual,
                storage_reserved=_floor_subtract(Owner.storage_reserved, reserved),
            )
            .execution_options(synchronize_session=False)
        )

    def decrement(self, db: Session, owner_id: str, size: int) -> None:
        """Give back ``size`` bytes of ``used``. Does not commit."""
        db.execute(
            update(Owner)
            .where(Owner.id == owner_id)
            .values(storage_used=_floor_subtract(Owner.storage_used, size))
            .execution_options(synchronize_session=False)
        )


def _floor_subtract(column, amount: int):
    return case((column >= amount, column - amount), else_=0)
