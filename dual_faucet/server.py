"""
Faucet HTTP Server

Long-running aiohttp service holding one Dispatcher (and so one RateLimiter)
for every request:

- GET /send/{address}        distribute to an address (either encoding)
- GET /balance/{environment} balances of the operator, or ?address=
- GET /config.json           public network and asset configuration
- GET /health                chain and operator health checks
- GET /api/approvals         tokens the contract still needs approval for
"""

from typing import Dict, Optional

from aiohttp import web
from loguru import logger

from .address_translator import Environment, normalize
from .dispatcher import DistributionResult, Dispatcher, graceful_shutdown
from .distribution_history import DistributionHistoryDB
from .errors import ErrorKind, FaucetError
from .faucet_config import FaucetConfig
from .health_checker import HealthChecker
from .operator_session import OperatorSession


DISPATCHER_KEY = web.AppKey("dispatcher", Dispatcher)
CHECKER_KEY = web.AppKey("checker", HealthChecker)

# HTTP status per failure kind; successful and noop results are 200
STATUS_BY_KIND = {
    ErrorKind.INVALID_ADDRESS: 400,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.BALANCE_QUERY_ERROR: 502,
    ErrorKind.INSUFFICIENT_OPERATOR_FUNDS: 503,
    ErrorKind.CHAIN_SUBMISSION_ERROR: 502,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.CONTRACT_REVERTED: 409,
}

ENVIRONMENT_ALIASES = {
    'ledger_a': Environment.LEDGER_A,
    'cosmos': Environment.LEDGER_A,
    'ledger_b': Environment.LEDGER_B,
    'evm': Environment.LEDGER_B,
}


def client_ip(request: web.Request) -> Optional[str]:
    """Client IP behind the usual proxy headers"""
    for header in ('CF-Connecting-IP', 'X-Real-IP'):
        value = request.headers.get(header)
        if value:
            return value.strip()

    forwarded = request.headers.get('X-Forwarded-For')
    if forwarded:
        return forwarded.split(',')[0].strip()

    return request.remote


def result_status(result: DistributionResult) -> int:
    if result.success:
        return 200
    return STATUS_BY_KIND.get(result.error_kind, 500)


def public_config(config: FaucetConfig) -> Dict:
    """Configuration safe to publish to the web frontend"""
    return {
        'network': {
            'name': config.network_name,
            'mode': config.network_mode,
            'evm_chain_id': config.chain.evm_chain_id,
            'cosmos_chain_id': config.chain.cosmos_chain_id,
            'bech32_prefix': config.chain.bech32_prefix,
            'atomic_multisend': config.ledger_b.atomic_multisend,
        },
        'limits': {
            'window_hours': config.limits.window_seconds / 3600,
            'per_address': config.limits.address,
            'per_ip': config.limits.ip,
        },
        'testing_mode': config.testing_mode,
        'assets': [
            {
                'symbol': asset.symbol,
                'denom': asset.denom,
                'erc20_contract': asset.erc20_contract,
                'decimals': asset.decimals,
                'evm_decimals': asset.evm_decimals,
                'amount_per_request': str(asset.amount_per_request),
                'target_balance': str(asset.target_balance),
            }
            for asset in config.assets
        ],
    }


# ============================================================================
# HANDLERS
# ============================================================================

async def handle_send(request: web.Request) -> web.Response:
    dispatcher = request.app[DISPATCHER_KEY]
    result = await dispatcher.distribute(request.match_info['address'], client_ip=client_ip(request))
    return web.json_response(result.to_dict(), status=result_status(result))


async def handle_balance(request: web.Request) -> web.Response:
    dispatcher = request.app[DISPATCHER_KEY]
    config = dispatcher.config

    environment = ENVIRONMENT_ALIASES.get(request.match_info['environment'].lower())
    if environment is None:
        raise web.HTTPNotFound(text=f"Unknown environment {request.match_info['environment']!r}")

    address = request.query.get('address')
    try:
        if address:
            info = normalize(address, config.chain.bech32_prefix)
            target = info.ledger_a_address if environment == Environment.LEDGER_A else info.ledger_b_address
        else:
            target = dispatcher.session.address_for(environment)

        client = dispatcher.ledger_a_client if environment == Environment.LEDGER_A else dispatcher.ledger_b_client
        balances = await client.get_balances(target, list(config.assets))
    except FaucetError as e:
        return web.json_response(
            {'error_kind': e.kind.value, 'message': e.describe()},
            status=STATUS_BY_KIND.get(e.kind, 500)
        )

    return web.json_response({
        'environment': environment.value,
        'address': target,
        'balances': {symbol: str(amount) for symbol, amount in balances.items()},
    })


async def handle_config(request: web.Request) -> web.Response:
    return web.json_response(public_config(request.app[DISPATCHER_KEY].config))


async def handle_health(request: web.Request) -> web.Response:
    checker = request.app[CHECKER_KEY]
    refresh = request.query.get('refresh', '').lower() in ('1', 'true', 'yes')
    results = await checker.check_all(force_refresh=refresh)

    healthy = all(status.is_healthy for status in results.values())
    return web.json_response(
        {
            'status': 'healthy' if healthy else 'unhealthy',
            'components': {component: status.to_dict() for component, status in results.items()},
        },
        status=200 if healthy else 503
    )


async def handle_approvals(request: web.Request) -> web.Response:
    checker = request.app[CHECKER_KEY]
    dispatcher = request.app[DISPATCHER_KEY]

    try:
        pending = await checker.needs_approval()
    except Exception as e:
        logger.error(f"✗ Approval check failed: {e}")
        return web.json_response({'success': False, 'error': str(e)}, status=500)

    return web.json_response({
        'success': True,
        'faucet_address': dispatcher.session.ledger_b_address,
        'spender_address': dispatcher.config.ledger_b.atomic_multisend,
        'needs_approval': [asset.symbol for asset in pending],
    })


# ============================================================================
# APPLICATION
# ============================================================================

def create_app(dispatcher: Dispatcher, checker: Optional[HealthChecker] = None) -> web.Application:
    """
    Build the faucet web application around one dispatcher

    Args:
        dispatcher: Dispatcher shared by every request
        checker: Health checker (built from the dispatcher's clients if omitted)

    Returns:
        aiohttp Application; closing it shuts the dispatcher down
    """
    if checker is None:
        checker = HealthChecker(
            dispatcher.config,
            dispatcher.session,
            dispatcher.ledger_a_client,
            dispatcher.ledger_b_client
        )

    app = web.Application()
    app[DISPATCHER_KEY] = dispatcher
    app[CHECKER_KEY] = checker

    app.router.add_get('/send/{address}', handle_send)
    app.router.add_get('/balance/{environment}', handle_balance)
    app.router.add_get('/config.json', handle_config)
    app.router.add_get('/health', handle_health)
    app.router.add_get('/api/approvals', handle_approvals)

    async def shutdown(app: web.Application):
        await graceful_shutdown(app[DISPATCHER_KEY])

    app.on_cleanup.append(shutdown)
    return app


def run_server(config: FaucetConfig, session: OperatorSession, host: str = "0.0.0.0", port: int = 8088):
    """Serve the faucet until interrupted"""
    history = DistributionHistoryDB(config.history.db_path)
    dispatcher = Dispatcher.from_config(config, session, history=history)
    app = create_app(dispatcher)

    logger.info(f"Faucet listening on http://{host}:{port}")
    web.run_app(app, host=host, port=port, print=None)
