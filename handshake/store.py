"""Deal storage.

SQLite-backed persistence for deals, invites, payments, disputes, the
settlement ledger, payout accounts and the audit log. Status writes are
compare-and-swap on the status the caller read, so two racing transitions
cannot both win. Ledger entries are claimed before execution the same way.
Multi-row changes go through ``transaction()``.
"""

import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager

from handshake.errors import AlreadyExists, ConcurrentModification, FailedPrecondition, NotFound
from handshake.fees import FeeBreakdown, Leg
from handshake.invites import Invite
from handshake.machine import can_transition_to
from handshake.protocol import (
    AUDIT_EVENT_TYPES, DealStatus, DealType, DisputeStatus, ExtensionType, HoldOutcome, Outcome,
    Party, PaymentPurpose, PaymentStatus,
)
from handshake.records import AuditEntry, Deal, Dispute, LedgerEntry, Payment

logger = logging.getLogger(__name__)


def new_id() -> str:
    return uuid.uuid4().hex[:16]


# Columns update_deal() may write, with the decoder used when reading them back
_ENUM_COLUMNS = {
    "status": DealStatus,
    "deal_type": DealType,
    "proposed_outcome": Outcome,
    "extension_type": ExtensionType,
    "final_outcome": Outcome,
    "hold_outcome": HoldOutcome,
}
_JSON_COLUMNS = {"leg_a": Leg, "leg_b": Leg, "fee_breakdown": FeeBreakdown}
_BOOL_COLUMNS = {"extension_requested"}
DEAL_COLUMNS = (
    "id", "status", "title", "creator_id", "participant_id", "participant_email", "deal_type",
    "leg_a", "leg_b", "deal_date", "fee_breakdown", "fairness_hold_a", "fairness_hold_b",
    "invite_token", "invite_expires_at", "proposed_outcome", "proposed_by",
    "extension_requested", "extension_requested_by", "extension_type", "extension_fee",
    "extension_fees_total", "final_outcome", "hold_outcome", "created_at", "updated_at",
    "activated_at", "completed_at", "cancelled_at", "cancelled_by", "cancel_reason",
)


def _encode(column: str, value):
    if value is None:
        return None
    if column in _JSON_COLUMNS:
        return json.dumps(value.to_dict())
    if column in _ENUM_COLUMNS:
        return value.value
    if column in _BOOL_COLUMNS:
        return int(bool(value))
    return value


def _decode(column: str, value):
    if value is None:
        return None
    if column in _JSON_COLUMNS:
        return _JSON_COLUMNS[column].from_dict(json.loads(value))
    if column in _ENUM_COLUMNS:
        return _ENUM_COLUMNS[column](value)
    if column in _BOOL_COLUMNS:
        return bool(value)
    return value


class DealStore:
    """SQLite-backed deal storage with state machine enforcement."""

    def __init__(self, db_path: str = ":memory:"):
        # Autocommit mode; transaction() issues BEGIN/COMMIT itself
        self.db = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self.db.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._init_db()

    def _init_db(self):
        # Enable WAL mode for safe concurrent reads during writes
        self.db.execute("PRAGMA journal_mode=WAL")
        self.db.execute("PRAGMA foreign_keys=ON")
        self.db.executescript("""
            CREATE TABLE IF NOT EXISTS deals (
                id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                title TEXT NOT NULL DEFAULT '',
                creator_id TEXT NOT NULL,
                participant_id TEXT,
                participant_email TEXT NOT NULL,
                deal_type TEXT NOT NULL,
                leg_a TEXT NOT NULL,
                leg_b TEXT NOT NULL,
                deal_date REAL NOT NULL,
                fee_breakdown TEXT NOT NULL,
                fairness_hold_a INTEGER NOT NULL DEFAULT 0,
                fairness_hold_b INTEGER NOT NULL DEFAULT 0,
                invite_token TEXT,
                invite_expires_at REAL,
                proposed_outcome TEXT,
                proposed_by TEXT,
                extension_requested INTEGER NOT NULL DEFAULT 0,
                extension_requested_by TEXT,
                extension_type TEXT,
                extension_fee INTEGER NOT NULL DEFAULT 0,
                extension_fees_total INTEGER NOT NULL DEFAULT 0,
                final_outcome TEXT,
                hold_outcome TEXT,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL,
                activated_at REAL,
                completed_at REAL,
                cancelled_at REAL,
                cancelled_by TEXT,
                cancel_reason TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_deals_status_date ON deals(status, deal_date);
            CREATE INDEX IF NOT EXISTS idx_deals_creator ON deals(creator_id);
            CREATE INDEX IF NOT EXISTS idx_deals_participant ON deals(participant_id);

            CREATE TABLE IF NOT EXISTS invites (
                token TEXT PRIMARY KEY,
                deal_id TEXT NOT NULL REFERENCES deals(id),
                creator_id TEXT NOT NULL,
                expires_at REAL NOT NULL,
                consumed_by TEXT,
                consumed_at REAL
            );
            CREATE INDEX IF NOT EXISTS idx_invites_deal ON invites(deal_id);

            CREATE TABLE IF NOT EXISTS payments (
                id TEXT PRIMARY KEY,
                deal_id TEXT NOT NULL REFERENCES deals(id),
                party TEXT NOT NULL,
                purpose TEXT NOT NULL,
                amount INTEGER NOT NULL,
                principal_portion INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL,
                payment_ref TEXT UNIQUE,
                refunded_amount INTEGER NOT NULL DEFAULT 0,
                failure_reason TEXT,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_payments_deal ON payments(deal_id);

            CREATE TABLE IF NOT EXISTS disputes (
                id TEXT PRIMARY KEY,
                deal_id TEXT NOT NULL REFERENCES deals(id),
                status TEXT NOT NULL,
                reason TEXT NOT NULL DEFAULT '',
                initiated_by TEXT NOT NULL,
                opened_at REAL NOT NULL,
                resolved_at REAL,
                resolved_by TEXT
            );
            -- At most one open dispute per deal
            CREATE UNIQUE INDEX IF NOT EXISTS idx_disputes_open
                ON disputes(deal_id) WHERE status = 'OPEN';

            CREATE TABLE IF NOT EXISTS ledger (
                id TEXT PRIMARY KEY,
                deal_id TEXT NOT NULL REFERENCES deals(id),
                kind TEXT NOT NULL,
                party TEXT NOT NULL,
                recipient_id TEXT NOT NULL DEFAULT '',
                amount INTEGER NOT NULL,
                reason TEXT NOT NULL,
                status TEXT NOT NULL,
                payment_id TEXT,
                payment_ref TEXT,
                processor_ref TEXT,
                error TEXT,
                attempts INTEGER NOT NULL DEFAULT 0,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_ledger_deal ON ledger(deal_id, status);

            CREATE TABLE IF NOT EXISTS actions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                deal_id TEXT NOT NULL,
                actor_id TEXT NOT NULL,
                event_type TEXT NOT NULL,
                details TEXT NOT NULL DEFAULT '{}',
                timestamp REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_actions_deal ON actions(deal_id);

            CREATE TABLE IF NOT EXISTS payout_accounts (
                principal_id TEXT PRIMARY KEY,
                account_id TEXT NOT NULL,
                updated_at REAL NOT NULL
            );
        """)

    # --- Transactions ---

    @contextmanager
    def transaction(self):
        """Run the enclosed writes atomically. Nested use joins the outer transaction."""
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return
            self.db.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield
            except BaseException:
                self.db.execute("ROLLBACK")
                raise
            else:
                self.db.execute("COMMIT")
            finally:
                self._depth = 0

    def _one(self, sql: str, params=()):
        with self._lock:
            return self.db.execute(sql, params).fetchone()

    def _all(self, sql: str, params=()):
        with self._lock:
            return self.db.execute(sql, params).fetchall()

    # --- Deals ---

    def insert_deal(self, deal: Deal) -> None:
        placeholders = ", ".join("?" for _ in DEAL_COLUMNS)
        values = [_encode(c, getattr(deal, c)) for c in DEAL_COLUMNS]
        with self._lock:
            self.db.execute(
                f"INSERT INTO deals ({', '.join(DEAL_COLUMNS)}) VALUES ({placeholders})", values)

    def get_deal(self, deal_id: str) -> Deal | None:
        row = self._one("SELECT * FROM deals WHERE id = ?", (deal_id,))
        if not row:
            return None
        return self._row_to_deal(row)

    def list_deals(self, principal_id: str | None = None, status: DealStatus | None = None,
                   limit: int = 50) -> list[Deal]:
        """Deals a principal is party to (all deals when principal_id is None), newest first."""
        clauses, params = [], []
        if principal_id is not None:
            clauses.append("(creator_id = ? OR participant_id = ?)")
            params.extend([principal_id, principal_id])
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._all(f"SELECT * FROM deals {where} ORDER BY created_at DESC LIMIT ?",
                         (*params, limit))
        return [self._row_to_deal(r) for r in rows]

    def list_due(self, status: DealStatus, before: float, limit: int = 500,
                 after: tuple[float, str] | None = None) -> list[Deal]:
        """One page of deals in ``status`` whose deal date is earlier than ``before``.

        Ordered by (deal_date, id). Pass the last deal's (deal_date, id) as
        ``after`` to fetch the next page; rows that changed status in between
        do not shift the cursor.
        """
        sql = "SELECT * FROM deals WHERE status = ? AND deal_date < ?"
        params = [status.value, before]
        if after is not None:
            sql += " AND (deal_date > ? OR (deal_date = ? AND id > ?))"
            params.extend([after[0], after[0], after[1]])
        rows = self._all(f"{sql} ORDER BY deal_date, id LIMIT ?", (*params, limit))
        return [self._row_to_deal(r) for r in rows]

    def iter_due(self, status: DealStatus, before: float, page_size: int = 500):
        """Every deal ``list_due`` would return, fetched page by page."""
        after = None
        while True:
            page = self.list_due(status, before, limit=page_size, after=after)
            yield from page
            if len(page) < page_size:
                return
            after = (page[-1].deal_date, page[-1].id)

    def update_deal(self, deal_id: str, expected_status: DealStatus, **fields) -> None:
        """Compare-and-swap update of a deal read in ``expected_status``.

        Raises ConcurrentModification when the stored status has moved on and
        NotFound when the deal is gone.
        """
        unknown = set(fields) - set(DEAL_COLUMNS)
        if unknown or "id" in fields:
            raise ValueError(f"Cannot update deal columns: {sorted(unknown | ({'id'} & set(fields)))}")
        new_status = fields.get("status")
        if new_status is not None and new_status is not expected_status \
                and not can_transition_to(expected_status, new_status):
            raise FailedPrecondition(
                f"Invalid state transition: {expected_status.value} -> {new_status.value}")

        columns = list(fields)
        assignments = ", ".join(f"{c} = ?" for c in columns)
        values = [_encode(c, fields[c]) for c in columns]
        with self._lock:
            cursor = self.db.execute(
                f"UPDATE deals SET {assignments} WHERE id = ? AND status = ?",
                (*values, deal_id, expected_status.value),
            )
            if cursor.rowcount == 0:
                if self.db.execute("SELECT 1 FROM deals WHERE id = ?", (deal_id,)).fetchone() is None:
                    raise NotFound("Deal not found")
                raise ConcurrentModification(f"Deal {deal_id} changed concurrently")

    def _row_to_deal(self, row) -> Deal:
        return Deal(**{c: _decode(c, row[c]) for c in DEAL_COLUMNS})

    # --- Invites ---

    def insert_invite(self, invite: Invite) -> None:
        with self._lock:
            self.db.execute(
                "INSERT INTO invites (token, deal_id, creator_id, expires_at) VALUES (?, ?, ?, ?)",
                (invite.token, invite.deal_id, invite.creator_id, invite.expires_at),
            )

    def get_invite(self, token: str) -> Invite | None:
        row = self._one("SELECT * FROM invites WHERE token = ?", (token,))
        if not row:
            return None
        return Invite(
            token=row["token"],
            deal_id=row["deal_id"],
            creator_id=row["creator_id"],
            expires_at=row["expires_at"],
            consumed_by=row["consumed_by"],
            consumed_at=row["consumed_at"],
        )

    def consume_invite(self, token: str, principal_id: str, now: float) -> bool:
        """Mark the invite used. False when someone else consumed it first."""
        with self._lock:
            cursor = self.db.execute(
                "UPDATE invites SET consumed_by = ?, consumed_at = ? WHERE token = ? AND consumed_by IS NULL",
                (principal_id, now, token),
            )
            return cursor.rowcount > 0

    def delete_open_invites(self, deal_id: str) -> int:
        """Drop unconsumed invites for a deal so their tokens stop resolving."""
        with self._lock:
            cursor = self.db.execute(
                "DELETE FROM invites WHERE deal_id = ? AND consumed_by IS NULL", (deal_id,))
            return cursor.rowcount

    # --- Payments ---

    def insert_payment(self, payment: Payment) -> Payment:
        try:
            with self._lock:
                self.db.execute(
                    "INSERT INTO payments (id, deal_id, party, purpose, amount, principal_portion, status, "
                    "payment_ref, refunded_amount, failure_reason, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (payment.id, payment.deal_id, payment.party.value, payment.purpose.value,
                     payment.amount, payment.principal_portion, payment.status.value,
                     payment.payment_ref, payment.refunded_amount, payment.failure_reason,
                     payment.created_at, payment.updated_at),
                )
        except sqlite3.IntegrityError as e:
            raise AlreadyExists(f"Payment {payment.payment_ref} already recorded") from e
        return payment

    def get_payment_by_ref(self, payment_ref: str) -> Payment | None:
        row = self._one("SELECT * FROM payments WHERE payment_ref = ?", (payment_ref,))
        return self._row_to_payment(row) if row else None

    def list_payments(self, deal_id: str) -> list[Payment]:
        rows = self._all("SELECT * FROM payments WHERE deal_id = ? ORDER BY created_at, rowid", (deal_id,))
        return [self._row_to_payment(r) for r in rows]

    def set_payment_status(self, payment_id: str, status: PaymentStatus, now: float,
                           failure_reason: str | None = None) -> None:
        with self._lock:
            self.db.execute(
                "UPDATE payments SET status = ?, failure_reason = COALESCE(?, failure_reason), updated_at = ? "
                "WHERE id = ?",
                (status.value, failure_reason, now, payment_id),
            )

    def _row_to_payment(self, row) -> Payment:
        return Payment(
            id=row["id"],
            deal_id=row["deal_id"],
            party=Party(row["party"]),
            purpose=PaymentPurpose(row["purpose"]),
            amount=row["amount"],
            principal_portion=row["principal_portion"],
            status=PaymentStatus(row["status"]),
            payment_ref=row["payment_ref"],
            refunded_amount=row["refunded_amount"],
            failure_reason=row["failure_reason"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # --- Disputes ---

    def open_dispute(self, deal_id: str, initiated_by: str, reason: str, now: float) -> Dispute:
        dispute = Dispute(
            id=new_id(),
            deal_id=deal_id,
            status=DisputeStatus.OPEN,
            reason=reason,
            initiated_by=initiated_by,
            opened_at=now,
        )
        try:
            with self._lock:
                self.db.execute(
                    "INSERT INTO disputes (id, deal_id, status, reason, initiated_by, opened_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (dispute.id, deal_id, dispute.status.value, reason, initiated_by, now),
                )
        except sqlite3.IntegrityError as e:
            raise AlreadyExists("Deal already has an open dispute") from e
        return dispute

    def get_open_dispute(self, deal_id: str) -> Dispute | None:
        row = self._one("SELECT * FROM disputes WHERE deal_id = ? AND status = 'OPEN'", (deal_id,))
        return self._row_to_dispute(row) if row else None

    def list_disputes(self, deal_id: str) -> list[Dispute]:
        rows = self._all("SELECT * FROM disputes WHERE deal_id = ? ORDER BY opened_at", (deal_id,))
        return [self._row_to_dispute(r) for r in rows]

    def resolve_open_dispute(self, deal_id: str, resolved_by: str, now: float) -> bool:
        with self._lock:
            cursor = self.db.execute(
                "UPDATE disputes SET status = 'RESOLVED', resolved_at = ?, resolved_by = ? "
                "WHERE deal_id = ? AND status = 'OPEN'",
                (now, resolved_by, deal_id),
            )
            return cursor.rowcount > 0

    def _row_to_dispute(self, row) -> Dispute:
        return Dispute(
            id=row["id"],
            deal_id=row["deal_id"],
            status=DisputeStatus(row["status"]),
            reason=row["reason"],
            initiated_by=row["initiated_by"],
            opened_at=row["opened_at"],
            resolved_at=row["resolved_at"],
            resolved_by=row["resolved_by"],
        )

    # --- Settlement ledger ---

    def insert_ledger_entry(self, deal_id: str, movement, now: float) -> LedgerEntry:
        entry = LedgerEntry(
            id=new_id(),
            deal_id=deal_id,
            kind=movement.kind,
            party=movement.party,
            recipient_id=movement.recipient_id,
            amount=movement.amount,
            reason=movement.reason,
            status="pending",
            created_at=now,
            updated_at=now,
            payment_id=movement.payment_id,
            payment_ref=movement.payment_ref,
        )
        with self._lock:
            self.db.execute(
                "INSERT INTO ledger (id, deal_id, kind, party, recipient_id, amount, reason, status, "
                "payment_id, payment_ref, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (entry.id, deal_id, entry.kind, entry.party.value, entry.recipient_id, entry.amount,
                 entry.reason, entry.status, entry.payment_id, entry.payment_ref, now, now),
            )
        return entry

    def claim_ledger_entry(self, entry_id: str, now: float) -> bool:
        """Move a pending or failed entry to executing. False when another caller holds it."""
        with self._lock:
            cursor = self.db.execute(
                "UPDATE ledger SET status = 'executing', updated_at = ? "
                "WHERE id = ? AND status IN ('pending', 'failed')",
                (now, entry_id),
            )
            return cursor.rowcount > 0

    def mark_ledger_succeeded(self, entry_id: str, processor_ref: str, now: float) -> LedgerEntry:
        with self.transaction():
            entry = self.get_ledger_entry(entry_id)
            if entry is None:
                raise NotFound(f"Ledger entry {entry_id} not found")
            cursor = self.db.execute(
                "UPDATE ledger SET status = 'succeeded', processor_ref = ?, error = NULL, "
                "attempts = attempts + 1, updated_at = ? WHERE id = ? AND status = 'executing'",
                (processor_ref, now, entry_id),
            )
            if cursor.rowcount and entry.kind == "refund" and entry.payment_id:
                self.db.execute(
                    "UPDATE payments SET refunded_amount = refunded_amount + ?, updated_at = ? WHERE id = ?",
                    (entry.amount, now, entry.payment_id),
                )
            return self.get_ledger_entry(entry_id)

    def mark_ledger_failed(self, entry_id: str, error: str, now: float) -> LedgerEntry:
        with self.transaction():
            self.db.execute(
                "UPDATE ledger SET status = 'failed', error = ?, attempts = attempts + 1, updated_at = ? "
                "WHERE id = ? AND status = 'executing'",
                (error[:500], now, entry_id),
            )
            entry = self.get_ledger_entry(entry_id)
            if entry is None:
                raise NotFound(f"Ledger entry {entry_id} not found")
            return entry

    def get_ledger_entry(self, entry_id: str) -> LedgerEntry | None:
        row = self._one("SELECT * FROM ledger WHERE id = ?", (entry_id,))
        return self._row_to_ledger(row) if row else None

    def list_ledger(self, deal_id: str, status: str | tuple[str, ...] | None = None) -> list[LedgerEntry]:
        if status is None:
            rows = self._all("SELECT * FROM ledger WHERE deal_id = ? ORDER BY created_at, rowid", (deal_id,))
        else:
            statuses = (status,) if isinstance(status, str) else tuple(status)
            marks = ", ".join("?" for _ in statuses)
            rows = self._all(
                f"SELECT * FROM ledger WHERE deal_id = ? AND status IN ({marks}) ORDER BY created_at, rowid",
                (deal_id, *statuses),
            )
        return [self._row_to_ledger(r) for r in rows]

    def _row_to_ledger(self, row) -> LedgerEntry:
        return LedgerEntry(
            id=row["id"],
            deal_id=row["deal_id"],
            kind=row["kind"],
            party=Party(row["party"]),
            recipient_id=row["recipient_id"],
            amount=row["amount"],
            reason=row["reason"],
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            payment_id=row["payment_id"],
            payment_ref=row["payment_ref"],
            processor_ref=row["processor_ref"],
            error=row["error"],
            attempts=row["attempts"],
        )

    # --- Payout accounts ---

    def set_payout_account(self, principal_id: str, account_id: str, now: float) -> None:
        with self._lock:
            self.db.execute(
                "INSERT INTO payout_accounts (principal_id, account_id, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(principal_id) DO UPDATE SET account_id = excluded.account_id, "
                "updated_at = excluded.updated_at",
                (principal_id, account_id, now),
            )

    def get_payout_account(self, principal_id: str) -> str | None:
        row = self._one("SELECT account_id FROM payout_accounts WHERE principal_id = ?", (principal_id,))
        return row["account_id"] if row else None

    # --- Audit log ---

    def append_audit(self, deal_id: str, actor_id: str, event_type: str, details: dict | None,
                     now: float) -> bool:
        """Append an audit record. A failed write is logged and never aborts the caller."""
        if event_type not in AUDIT_EVENT_TYPES:
            raise ValueError(f"unknown audit event type: {event_type}")
        with self._lock:
            self.db.execute("SAVEPOINT audit")
            try:
                self.db.execute(
                    "INSERT INTO actions (deal_id, actor_id, event_type, details, timestamp) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (deal_id, actor_id, event_type, json.dumps(details or {}), now),
                )
            except sqlite3.Error:
                logger.exception("audit write failed for deal %s (%s)", deal_id, event_type)
                self.db.execute("ROLLBACK TO SAVEPOINT audit")
                self.db.execute("RELEASE SAVEPOINT audit")
                return False
            self.db.execute("RELEASE SAVEPOINT audit")
            return True

    def list_audit(self, deal_id: str) -> list[AuditEntry]:
        rows = self._all("SELECT * FROM actions WHERE deal_id = ? ORDER BY id", (deal_id,))
        return [
            AuditEntry(
                deal_id=r["deal_id"],
                actor_id=r["actor_id"],
                event_type=r["event_type"],
                details=json.loads(r["details"]),
                timestamp=r["timestamp"],
            )
            for r in rows
        ]

    def close(self):
        self.db.close()
