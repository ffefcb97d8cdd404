"""
Distribution History Database

SQLite database logging every terminal distribution result.

Tables:
- distributions: One row per request (success, noop or failure)
- distribution_transfers: Assets delivered by successful requests
"""

import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger


class DistributionHistoryDB:
    """
    SQLite database for distribution history

    Features:
    - Request logging with failure kind
    - Per-asset delivery tracking
    - Per-address lookups
    - Statistics
    """

    def __init__(self, db_path: str = ".faucet/history.db"):
        """
        Initialize database

        Args:
            db_path: Path to SQLite database (":memory:" for an in-memory database)
        """
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self.conn: Optional[sqlite3.Connection] = None
        self._initialize_db()
        logger.info(f"Distribution history database initialized: {self.db_path}")

    def _initialize_db(self):
        """Initialize database and create tables"""
        self.conn = sqlite3.connect(str(self.db_path))
        self.conn.row_factory = sqlite3.Row
        self._create_tables()

    def _create_tables(self):
        """Create database tables"""
        cursor = self.conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS distributions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                request_id TEXT UNIQUE NOT NULL,
                recipient TEXT NOT NULL,
                normalized_address TEXT,
                environment TEXT NOT NULL,
                client_ip TEXT,
                state TEXT NOT NULL,
                success BOOLEAN DEFAULT 0,
                noop BOOLEAN DEFAULT 0,
                error_kind TEXT,
                message TEXT,
                total_time_seconds REAL DEFAULT 0,
                created_at TIMESTAMP NOT NULL,
                completed_at TIMESTAMP
            )
        """)

        # Amounts are stored as TEXT: 18-decimal base units overflow SQLite integers
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS distribution_transfers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                request_id TEXT NOT NULL,
                asset TEXT NOT NULL,
                amount TEXT NOT NULL,
                tx_reference TEXT NOT NULL,
                FOREIGN KEY (request_id) REFERENCES distributions(request_id)
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_distributions_normalized ON distributions(normalized_address)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_distributions_created ON distributions(created_at)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_transfers_request ON distribution_transfers(request_id)")

        self.conn.commit()
        logger.debug("Database tables created successfully")

    def record_result(self, result) -> bool:
        """
        Record a distribution result

        Args:
            result: DistributionResult

        Returns:
            Success status
        """
        try:
            cursor = self.conn.cursor()
            cursor.execute("""
                INSERT INTO distributions (
                    request_id, recipient, normalized_address, environment, client_ip,
                    state, success, noop, error_kind, message, total_time_seconds,
                    created_at, completed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                result.request_id,
                result.recipient,
                result.normalized_address,
                result.environment,
                result.client_ip,
                result.state.value,
                result.success,
                result.noop,
                result.error_kind.value if result.error_kind else None,
                result.message,
                result.total_time_seconds,
                result.created_at.isoformat(),
                result.completed_at.isoformat() if result.completed_at else None
            ))

            cursor.executemany("""
                INSERT INTO distribution_transfers (request_id, asset, amount, tx_reference)
                VALUES (?, ?, ?, ?)
            """, [(result.request_id, t.asset, str(t.amount), t.tx_reference) for t in result.transfers])

            self.conn.commit()
            logger.debug(f"✓ Distribution recorded: {result.request_id}")
            return True

        except sqlite3.IntegrityError:
            logger.error(f"✗ Duplicate distribution record: {result.request_id}")
            self.conn.rollback()
            return False
        except Exception as e:
            logger.error(f"✗ Error recording distribution: {e}")
            self.conn.rollback()
            return False

    def _transfers_for(self, request_id: str) -> List[Dict]:
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT asset, amount, tx_reference FROM distribution_transfers WHERE request_id = ? ORDER BY id",
            (request_id,)
        )
        return [
            {'asset': row['asset'], 'amount': int(row['amount']), 'tx_reference': row['tx_reference']}
            for row in cursor.fetchall()
        ]

    def get_distribution(self, request_id: str) -> Optional[Dict]:
        """
        Get distribution by request ID

        Args:
            request_id: Correlation id

        Returns:
            Distribution dict with its transfers, or None
        """
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM distributions WHERE request_id = ?", (request_id,))
        row = cursor.fetchone()

        if row:
            record = dict(row)
            record['transfers'] = self._transfers_for(request_id)
            return record
        return None

    def get_distributions_for_address(self, normalized_address: str, since: Optional[datetime] = None) -> List[Dict]:
        """
        Get distributions for an account id (either encoding maps to the same id)

        Args:
            normalized_address: Lowercase hex account id
            since: Only distributions created at or after this time

        Returns:
            Distribution records, newest first
        """
        cursor = self.conn.cursor()
        if since:
            cursor.execute("""
                SELECT * FROM distributions
                WHERE normalized_address = ? AND created_at >= ?
                ORDER BY created_at DESC
            """, (normalized_address.lower(), since.isoformat()))
        else:
            cursor.execute("""
                SELECT * FROM distributions
                WHERE normalized_address = ?
                ORDER BY created_at DESC
            """, (normalized_address.lower(),))

        return [dict(row) for row in cursor.fetchall()]

    def get_recent_deliveries(self, since: datetime) -> List[Tuple[str, Optional[str], float]]:
        """
        Successful, non-noop distributions completed at or after a time

        Args:
            since: Timezone-aware lower bound

        Returns:
            (normalized address, client IP, completion unix timestamp) tuples, oldest first
        """
        cursor = self.conn.cursor()
        cursor.execute("""
            SELECT normalized_address, client_ip, completed_at FROM distributions
            WHERE success = 1 AND noop = 0 AND normalized_address IS NOT NULL
                AND completed_at >= ?
            ORDER BY completed_at ASC
        """, (since.astimezone(timezone.utc).isoformat(),))

        return [
            (row['normalized_address'], row['client_ip'], datetime.fromisoformat(row['completed_at']).timestamp())
            for row in cursor.fetchall()
        ]

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get distribution statistics

        Returns:
            Statistics dictionary
        """
        cursor = self.conn.cursor()

        cursor.execute("SELECT COUNT(*) FROM distributions")
        total = cursor.fetchone()[0]

        cursor.execute("SELECT COUNT(*) FROM distributions WHERE success = 1 AND noop = 0")
        delivered = cursor.fetchone()[0]

        cursor.execute("SELECT COUNT(*) FROM distributions WHERE noop = 1")
        noops = cursor.fetchone()[0]

        cursor.execute("SELECT error_kind, COUNT(*) FROM distributions WHERE success = 0 GROUP BY error_kind")
        failures_by_kind = {row[0]: row[1] for row in cursor.fetchall()}

        cursor.execute("SELECT environment, COUNT(*) FROM distributions WHERE success = 1 GROUP BY environment")
        by_environment = {row[0]: row[1] for row in cursor.fetchall()}

        # Summed in Python: amounts are arbitrary precision
        cursor.execute("SELECT asset, amount FROM distribution_transfers")
        volume: Dict[str, int] = {}
        for row in cursor.fetchall():
            volume[row['asset']] = volume.get(row['asset'], 0) + int(row['amount'])

        cursor.execute("SELECT AVG(total_time_seconds) FROM distributions WHERE success = 1 AND noop = 0")
        avg_time = cursor.fetchone()[0] or 0

        failed = sum(failures_by_kind.values())
        return {
            'total_requests': total,
            'successful_distributions': delivered,
            'noop_requests': noops,
            'failed_requests': failed,
            'success_rate': ((delivered + noops) / total * 100) if total > 0 else 0,
            'failures_by_kind': failures_by_kind,
            'successes_by_environment': by_environment,
            'volume_by_asset': volume,
            'avg_distribution_time_seconds': avg_time,
        }

    def close(self):
        """Close database connection"""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info("Database connection closed")
