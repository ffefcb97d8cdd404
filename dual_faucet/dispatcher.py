"""
Faucet Dispatcher

Drives one distribution request through its states:

RECEIVED -> CLASSIFIED -> ADMISSION_CHECKED -> PLANNED
    -> NOOP_COMPLETE                       (nothing needed, no chain writes)
    -> EXECUTING -> COMPLETED | FAILED

1. Classify the address and derive its counterpart
2. Admission through the rate limiter (slot reserved)
3. Plan top-ups from live balances
4. Execute: AtomicMultiSend on Ledger-B, one multi-coin MsgSend on Ledger-A
5. Commit the rate limit slot on success, release it otherwise
6. Write the result to the distribution history
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional

from loguru import logger

from .address_translator import AddressInfo, Environment, normalize
from .atomic_multisend import AtomicTransferInvoker
from .balance_reconciler import BalanceReconciler, TransferPlan
from .distribution_history import DistributionHistoryDB
from .errors import ChainSubmissionError, ErrorKind, FaucetError, RateLimited
from .faucet_config import FaucetConfig
from .ledger_a_client import LedgerAClient, coins_from_plan
from .ledger_b_client import LedgerBClient
from .local_chain import LocalChain, LocalLedgerAClient, LocalLedgerBClient
from .operator_session import OperatorSession
from .rate_limiter import RateLimiter


class DispatchState(str, Enum):
    RECEIVED = "RECEIVED"
    CLASSIFIED = "CLASSIFIED"
    ADMISSION_CHECKED = "ADMISSION_CHECKED"
    PLANNED = "PLANNED"
    NOOP_COMPLETE = "NOOP_COMPLETE"
    EXECUTING = "EXECUTING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class DistributionRequest:
    """Distribution request"""
    raw_address: str
    client_ip: Optional[str] = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    state: DispatchState = DispatchState.RECEIVED
    address_info: Optional[AddressInfo] = None

    @property
    def environment(self) -> Optional[Environment]:
        return self.address_info.environment if self.address_info else None

    @property
    def normalized_address(self) -> Optional[str]:
        return self.address_info.normalized if self.address_info else None


@dataclass
class TransferOutcome:
    """One asset delivered to the recipient"""
    asset: str
    amount: int
    tx_reference: str

    def to_dict(self) -> Dict:
        return {'asset': self.asset, 'amount': str(self.amount), 'tx_reference': self.tx_reference}


@dataclass
class DistributionResult:
    """Distribution result"""
    request_id: str
    success: bool
    recipient: str
    environment: Optional[str]
    state: DispatchState
    transfers: List[TransferOutcome] = field(default_factory=list)
    noop: bool = False
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    retry_after_seconds: Optional[float] = None
    normalized_address: Optional[str] = None
    client_ip: Optional[str] = None
    total_time_seconds: float = 0.0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None

    @property
    def tx_references(self) -> List[str]:
        return sorted({t.tx_reference for t in self.transfers})

    def to_dict(self) -> Dict:
        return {
            'request_id': self.request_id,
            'success': self.success,
            'recipient': self.recipient,
            'environment': self.environment,
            'state': self.state.value,
            'transfers': [t.to_dict() for t in self.transfers],
            'noop': self.noop,
            'error_kind': self.error_kind.value if self.error_kind else None,
            'message': self.message,
            'retry_after_seconds': self.retry_after_seconds,
            'created_at': self.created_at.isoformat(),
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
        }


async def graceful_shutdown(dispatcher: 'Dispatcher', timeout: float = 15.0):
    """
    Close the dispatcher's clients and history database within a timeout

    Args:
        dispatcher: Dispatcher to shut down
        timeout: Maximum time to wait (seconds)
    """
    logger.info("Starting graceful shutdown...")
    try:
        await asyncio.wait_for(dispatcher.close(), timeout=timeout)
        logger.info("✓ Graceful shutdown complete")
    except asyncio.TimeoutError:
        logger.warning(f"Shutdown timeout after {timeout}s")


class Dispatcher:
    """
    Dual-environment faucet dispatcher

    Features:
    1. Address classification + counterpart derivation
    2. Per-address / per-IP admission with atomic reservation
    3. Top-up-to-target planning from live balances
    4. All-or-nothing delivery in either environment
    5. Quota consumed only by successful distributions
    6. Distribution history logging
    """

    def __init__(
        self,
        config: FaucetConfig,
        session: OperatorSession,
        rate_limiter: RateLimiter,
        reconciler: BalanceReconciler,
        ledger_a_client,
        ledger_b_client,
        invoker: AtomicTransferInvoker,
        history: Optional[DistributionHistoryDB] = None
    ):
        """
        Initialize dispatcher

        Args:
            config: Faucet configuration
            session: Operator session (key + submission locks)
            rate_limiter: Admission control
            reconciler: Balance reconciler
            ledger_a_client: Ledger-A client (live or local)
            ledger_b_client: Ledger-B client (live or local)
            invoker: AtomicMultiSend invoker
            history: Optional distribution history database
        """
        self.config = config
        self.session = session
        self.rate_limiter = rate_limiter
        self.reconciler = reconciler
        self.ledger_a_client = ledger_a_client
        self.ledger_b_client = ledger_b_client
        self.invoker = invoker
        self.history = history

        logger.info("Faucet dispatcher initialized")
        logger.info(f"  Network: {config.network_name} ({config.network_mode})")
        logger.info(f"  Operator: {session.ledger_b_address} / {session.ledger_a_address}")
        logger.info(f"  History: {'enabled' if history else 'disabled'}")

    @classmethod
    def from_config(
        cls,
        config: FaucetConfig,
        session: OperatorSession,
        history: Optional[DistributionHistoryDB] = None,
        local_chain: Optional[LocalChain] = None
    ) -> 'Dispatcher':
        """
        Wire every component from the configuration

        In local mode both environments are served by a LocalChain
        (bootstrapped for the operator unless one is given). With a history
        database, deliveries still inside the rate limit window are restored.
        """
        if config.network_mode == 'local':
            chain = local_chain or LocalChain.from_config(config, session.ledger_b_address)
            ledger_a_client = LocalLedgerAClient(chain)
            ledger_b_client = LocalLedgerBClient(chain)
        else:
            ledger_a_client = LedgerAClient(config.ledger_a, config.chain)
            ledger_b_client = LedgerBClient(config.ledger_b, config.chain)

        rate_limiter = RateLimiter(
            window_seconds=config.limits.window_seconds,
            address_quota=config.limits.address,
            ip_quota=config.limits.ip
        )
        if history:
            since = datetime.now(timezone.utc) - timedelta(seconds=rate_limiter.window_seconds)
            rate_limiter.restore(history.get_recent_deliveries(since))

        reconciler = BalanceReconciler(
            {Environment.LEDGER_A: ledger_a_client, Environment.LEDGER_B: ledger_b_client},
            testing_mode=config.testing_mode
        )
        invoker = AtomicTransferInvoker(
            ledger_b_client,
            session,
            config.ledger_b.atomic_multisend,
            gas_limit=config.ledger_b.gas_limit
        )

        return cls(config, session, rate_limiter, reconciler, ledger_a_client, ledger_b_client, invoker, history)

    def _transition(self, request: DistributionRequest, state: DispatchState, detail: str = ""):
        previous = request.state
        request.state = state
        suffix = f" - {detail}" if detail else ""
        logger.info(f"[{request.request_id}] {previous.value} -> {state.value}{suffix}")

    async def distribute(self, address: str, client_ip: Optional[str] = None) -> DistributionResult:
        """
        Run one distribution request to completion

        Args:
            address: Recipient address in either encoding
            client_ip: Requesting client IP, for the secondary limit

        Returns:
            DistributionResult (request-level failures are reported, not raised)
        """
        request = DistributionRequest(raw_address=address, client_ip=client_ip)
        logger.info(f"[{request.request_id}] {DispatchState.RECEIVED.value}: {address!r} (ip: {client_ip or '-'})")

        # Step 1: Classify
        try:
            request.address_info = normalize(address, self.config.chain.bech32_prefix)
        except FaucetError as e:
            return self._finish_failed(request, e)

        info = request.address_info
        self._transition(
            request, DispatchState.CLASSIFIED,
            f"{info.environment.value} {info.address} (counterpart "
            f"{info.ledger_b_address if info.environment == Environment.LEDGER_A else info.ledger_a_address})"
        )

        # Step 2: Admission
        decision = self.rate_limiter.try_acquire(info.normalized, client_ip)
        if not decision:
            error = RateLimited(decision.reason or "Rate limited", recipient=info.address)
            return self._finish_failed(request, error, retry_after=decision.retry_after_seconds)

        self._transition(request, DispatchState.ADMISSION_CHECKED)

        committed = False
        try:
            # Step 3: Plan
            plan = await self.reconciler.plan_distribution(info.environment, info.address, list(self.config.assets))
            self._transition(request, DispatchState.PLANNED, f"{len(plan.transfers)} transfer(s) {plan.amounts()}")

            if plan.is_empty:
                self._transition(request, DispatchState.NOOP_COMPLETE, "all targets already met")
                return self._finish(request, DistributionResult(
                    request_id=request.request_id,
                    success=True,
                    recipient=info.address,
                    environment=info.environment.value,
                    state=DispatchState.NOOP_COMPLETE,
                    noop=True,
                    message="Recipient already holds every target balance"
                ))

            # Step 4: Execute
            self._transition(request, DispatchState.EXECUTING)
            outcomes = await self._execute(plan)

            # Step 5: Consume quota only now
            self.rate_limiter.commit(info.normalized, client_ip)
            committed = True

            self._transition(request, DispatchState.COMPLETED, f"tx {', '.join(sorted({o.tx_reference for o in outcomes}))}")
            return self._finish(request, DistributionResult(
                request_id=request.request_id,
                success=True,
                recipient=info.address,
                environment=info.environment.value,
                state=DispatchState.COMPLETED,
                transfers=outcomes
            ))

        except FaucetError as e:
            return self._finish_failed(request, e)
        except Exception as e:
            logger.exception(f"[{request.request_id}] Unexpected error during distribution")
            return self._finish_failed(request, ChainSubmissionError(f"Unexpected error: {e}", recipient=info.address))
        finally:
            if not committed:
                self.rate_limiter.release(info.normalized, client_ip)

    async def _execute(self, plan: TransferPlan) -> List[TransferOutcome]:
        """Deliver a non-empty plan through its environment's transfer path"""
        if plan.environment == Environment.LEDGER_B:
            tx_reference = await self.invoker.execute(plan)
        else:
            coins = coins_from_plan(plan)
            tx_reference = await self.ledger_a_client.send_coins(self.session, plan.recipient, coins)

        return [TransferOutcome(t.symbol, t.amount, tx_reference) for t in plan.transfers]

    def _finish_failed(
        self,
        request: DistributionRequest,
        error: FaucetError,
        retry_after: Optional[float] = None
    ) -> DistributionResult:
        self._transition(request, DispatchState.FAILED, f"{error.kind.value}: {error.describe()}")
        info = request.address_info
        return self._finish(request, DistributionResult(
            request_id=request.request_id,
            success=False,
            recipient=info.address if info else str(request.raw_address or ""),
            environment=info.environment.value if info else Environment.INVALID.value,
            state=DispatchState.FAILED,
            error_kind=error.kind,
            message=error.describe(),
            retry_after_seconds=retry_after
        ))

    def _finish(self, request: DistributionRequest, result: DistributionResult) -> DistributionResult:
        result.normalized_address = request.normalized_address
        result.client_ip = request.client_ip
        result.created_at = request.received_at
        result.completed_at = datetime.now(timezone.utc)
        result.total_time_seconds = (result.completed_at - request.received_at).total_seconds()

        if result.success:
            logger.info(f"✅ [{request.request_id}] Distribution finished in {result.total_time_seconds:.1f}s")
        else:
            logger.warning(f"❌ [{request.request_id}] Distribution failed: {result.message}")

        if self.history:
            self.history.record_result(result)

        return result

    async def close(self):
        """Close chain clients and the history database"""
        for client in (self.ledger_a_client, self.ledger_b_client):
            try:
                await client.close()
            except Exception as e:
                logger.warning(f"Error closing {type(client).__name__}: {e}")

        if self.history:
            self.history.close()
