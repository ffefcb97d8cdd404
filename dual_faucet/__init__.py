"""
Dual-Environment Faucet

Distributes test assets to recipients on a chain with two execution
environments sharing one key space: a bank ledger (bech32 addresses) and an
EVM (0x addresses).

Components:
- address_translator: bech32 <-> hex translation of the same 20-byte id
- rate_limiter: Sliding-window admission per address and IP
- balance_reconciler: Top-up-to-target transfer planning
- atomic_multisend: All-or-nothing Ledger-B delivery via AtomicMultiSend
- ledger_a_client / ledger_b_client: Chain access for each environment
- dispatcher: Request state machine
- distribution_history: SQLite-based distribution logging
- health_checker: Endpoint, float and allowance monitoring
- local_chain: In-memory devnet for local mode and tests
- server: aiohttp service sharing one dispatcher across requests

Guarantees:
1. A recipient never receives a partial bundle
2. Addresses are never credited in the wrong encoding
3. Quota is only consumed by successful distributions
"""

from .address_translator import (
    AddressInfo,
    Environment,
    classify,
    normalize,
    to_environment_a,
    to_environment_b,
)
from .rate_limiter import (
    AdmissionDecision,
    RateLimiter,
)
from .balance_reconciler import (
    BalanceReconciler,
    PlannedTransfer,
    TransferPlan,
)
from .atomic_multisend import (
    AtomicTransferInvoker,
)
from .dispatcher import (
    DispatchState,
    Dispatcher,
    DistributionResult,
    graceful_shutdown,
)
from .distribution_history import (
    DistributionHistoryDB,
)
from .errors import (
    ConfigError,
    ErrorKind,
    FaucetError,
)
from .faucet_config import (
    Asset,
    FaucetConfig,
    load_config,
)
from .health_checker import (
    ChainHealth,
    HealthChecker,
)
from .local_chain import (
    LocalChain,
)
from .operator_session import (
    OperatorSession,
)
from .server import (
    create_app,
    run_server,
)

__all__ = [
    # Address translation
    'AddressInfo',
    'Environment',
    'classify',
    'normalize',
    'to_environment_a',
    'to_environment_b',

    # Admission
    'AdmissionDecision',
    'RateLimiter',

    # Planning
    'BalanceReconciler',
    'PlannedTransfer',
    'TransferPlan',

    # Delivery
    'AtomicTransferInvoker',
    'LocalChain',

    # Main dispatcher
    'DispatchState',
    'Dispatcher',
    'DistributionResult',
    'graceful_shutdown',

    # HTTP service
    'create_app',
    'run_server',

    # History tracking
    'DistributionHistoryDB',

    # Health checking
    'ChainHealth',
    'HealthChecker',

    # Configuration and errors
    'Asset',
    'ConfigError',
    'ErrorKind',
    'FaucetConfig',
    'FaucetError',
    'OperatorSession',
    'load_config',
]

__version__ = '1.0.0'
__author__ = 'Dual Faucet'
__description__ = 'Dual-environment atomic test asset faucet'
