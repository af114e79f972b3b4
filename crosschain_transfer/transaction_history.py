"""
Transaction History Database

SQLite store for ICP transfers, bridge transactions and swaps.

Tables:
- records: One row per transfer record (full record kept as JSON)
- hop_transactions: Per-hop transactions of swaps
- errors: Error logging (refresh failures, rejected patches)
"""

import json
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

from .transfer_records import (
    SwapTransaction,
    TransactionStatus,
    TransferKind,
    TransferRecord,
    now_ms,
    record_from_payload,
)


class TransactionHistoryDB:
    """
    SQLite database for transfer records

    Features:
    - Upsert of records of every kind
    - Lookup by id, listing by kind and address
    - Swap hop tracking
    - Error logging
    - Statistics by kind and status
    """

    def __init__(self, db_path: str = "crosschain_history.db"):
        """
        Initialize database

        Args:
            db_path: Path to SQLite database (':memory:' for an in-memory store)
        """
        self.db_path = db_path if db_path == ':memory:' else Path(db_path)
        self.conn: Optional[sqlite3.Connection] = None
        self._initialize_db()
        logger.info(f"Transaction history database initialized: {self.db_path}")

    def _initialize_db(self):
        """Initialize database and create tables"""
        self.conn = sqlite3.connect(str(self.db_path))
        self.conn.row_factory = sqlite3.Row
        self._create_tables()

    def _create_tables(self):
        """Create database tables"""
        cursor = self.conn.cursor()

        # Table 1: Records
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS records (
                id TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                status TEXT NOT NULL,
                from_chain TEXT,
                to_chain TEXT,
                from_address TEXT,
                to_address TEXT,
                effective_timestamp INTEGER NOT NULL,
                last_change INTEGER NOT NULL,
                payload TEXT NOT NULL,
                CONSTRAINT valid_kind CHECK (kind IN ('icp', 'bridge', 'swap')),
                CONSTRAINT valid_status CHECK (
                    status IN ('PENDING', 'PROCESSING', 'CONFIRMED', 'FAILED', 'REJECTED')
                )
            )
        """)

        # Table 2: Swap hops
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS hop_transactions (
                record_id TEXT NOT NULL,
                hop_index INTEGER NOT NULL,
                chain TEXT NOT NULL,
                hash TEXT NOT NULL,
                status TEXT NOT NULL,
                PRIMARY KEY (record_id, hop_index),
                FOREIGN KEY (record_id) REFERENCES records(id)
            )
        """)

        # Table 3: Errors
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS errors (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                record_id TEXT,
                error_type TEXT NOT NULL,
                error_message TEXT NOT NULL,
                occurred_at INTEGER NOT NULL
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_records_kind ON records(kind)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_records_from_address ON records(from_address)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_records_to_address ON records(to_address)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_records_timestamp ON records(effective_timestamp)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_errors_record ON errors(record_id)")

        self.conn.commit()
        logger.debug("Database tables created successfully")

    def save_record(self, record: TransferRecord) -> bool:
        """
        Insert or replace a record

        Args:
            record: Transfer record of any kind

        Returns:
            Success status
        """
        source, target = _endpoints(record)
        try:
            cursor = self.conn.cursor()
            cursor.execute("""
                INSERT INTO records (
                    id, kind, status, from_chain, to_chain, from_address, to_address,
                    effective_timestamp, last_change, payload
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    status = excluded.status,
                    last_change = excluded.last_change,
                    payload = excluded.payload
            """, (
                record.record_id,
                record.kind.value,
                record.status.value,
                source,
                target,
                record.from_address,
                record.to_address,
                record.effective_timestamp,
                record.last_change,
                json.dumps(record.to_dict()),
            ))

            if isinstance(record, SwapTransaction):
                cursor.execute("DELETE FROM hop_transactions WHERE record_id = ?", (record.record_id,))
                cursor.executemany("""
                    INSERT INTO hop_transactions (record_id, hop_index, chain, hash, status)
                    VALUES (?, ?, ?, ?, ?)
                """, [
                    (record.record_id, index, tx.chain, tx.hash, tx.status.value)
                    for index, tx in enumerate(record.transactions)
                ])

            self.conn.commit()
            logger.debug(f"Record saved: {record.kind.value}/{record.record_id} ({record.status.value})")
            return True

        except sqlite3.Error as e:
            logger.error(f"✗ Error saving record {record.record_id}: {e}")
            self.conn.rollback()
            return False

    def record_error(self, record_id: Optional[str], error_type: str, error_message: str) -> bool:
        """
        Record an error

        Args:
            record_id: Related record id (if applicable)
            error_type: Type of error
            error_message: Error message

        Returns:
            Success status
        """
        try:
            cursor = self.conn.cursor()
            cursor.execute("""
                INSERT INTO errors (record_id, error_type, error_message, occurred_at)
                VALUES (?, ?, ?, ?)
            """, (record_id, error_type, error_message, now_ms()))

            self.conn.commit()
            return True

        except sqlite3.Error as e:
            logger.error(f"Error recording error: {e}")
            self.conn.rollback()
            return False

    def get_record(self, record_id: str) -> Optional[TransferRecord]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT payload FROM records WHERE id = ?", (record_id,))
        row = cursor.fetchone()

        if row:
            return record_from_payload(json.loads(row['payload']))
        return None

    def list_records(
        self,
        kind: Optional[TransferKind] = None,
        address: Optional[str] = None
    ) -> List[TransferRecord]:
        """
        List records, newest first

        Args:
            kind: Restrict to one kind
            address: Restrict to records sent from or to this address

        Returns:
            List of records
        """
        query = "SELECT payload FROM records"
        clauses, params = [], []

        if kind is not None:
            clauses.append("kind = ?")
            params.append(TransferKind(kind).value)
        if address:
            clauses.append("(from_address = ? OR to_address = ?)")
            params.extend([address, address])

        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY effective_timestamp DESC"

        cursor = self.conn.cursor()
        cursor.execute(query, params)
        return [record_from_payload(json.loads(row['payload'])) for row in cursor.fetchall()]

    def get_hop_transactions(self, record_id: str) -> List[Dict]:
        cursor = self.conn.cursor()
        cursor.execute("""
            SELECT hop_index, chain, hash, status FROM hop_transactions
            WHERE record_id = ? ORDER BY hop_index
        """, (record_id,))
        return [dict(row) for row in cursor.fetchall()]

    def get_errors(self, record_id: Optional[str] = None) -> List[Dict]:
        cursor = self.conn.cursor()
        if record_id is None:
            cursor.execute("SELECT * FROM errors ORDER BY id")
        else:
            cursor.execute("SELECT * FROM errors WHERE record_id = ? ORDER BY id", (record_id,))
        return [dict(row) for row in cursor.fetchall()]

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get record statistics

        Returns:
            Statistics dictionary with totals by kind and by status
        """
        cursor = self.conn.cursor()

        cursor.execute("SELECT COUNT(*) FROM records")
        total_records = cursor.fetchone()[0]

        cursor.execute("SELECT kind, COUNT(*) AS n FROM records GROUP BY kind")
        by_kind = {kind.value: 0 for kind in TransferKind}
        by_kind.update({row['kind']: row['n'] for row in cursor.fetchall()})

        cursor.execute("SELECT status, COUNT(*) AS n FROM records GROUP BY status")
        by_status = {status.value: 0 for status in TransactionStatus}
        by_status.update({row['status']: row['n'] for row in cursor.fetchall()})

        cursor.execute("SELECT COUNT(*) FROM errors")
        total_errors = cursor.fetchone()[0]

        finished = by_status['CONFIRMED'] + by_status['FAILED'] + by_status['REJECTED']
        success_rate = (by_status['CONFIRMED'] / finished * 100) if finished > 0 else 0

        return {
            'total_records': total_records,
            'by_kind': by_kind,
            'by_status': by_status,
            'in_flight': by_status['PENDING'] + by_status['PROCESSING'],
            'success_rate': success_rate,
            'total_errors': total_errors,
        }

    def print_statistics(self):
        """Print statistics"""
        stats = self.get_statistics()

        print("\n" + "="*80)
        print("CROSSCHAIN TRANSFER STATISTICS")
        print("="*80)
        print(f"Total Records:        {stats['total_records']}")
        for kind, count in stats['by_kind'].items():
            print(f"  {kind.upper():<20}{count}")
        for status, count in stats['by_status'].items():
            print(f"  {status:<20}{count}")
        print(f"In Flight:            {stats['in_flight']}")
        print(f"Success Rate:         {stats['success_rate']:.1f}%")
        print(f"Errors Logged:        {stats['total_errors']}")
        print("="*80 + "\n")

    def close(self):
        """Close database connection"""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info("Database connection closed")


def _endpoints(record: TransferRecord):
    if record.kind == TransferKind.ICP:
        return record.source_chain, record.target_chain
    return record.from_chain, record.to_chain
