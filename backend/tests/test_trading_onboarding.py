"""
Tests for the trading onboarding flow

Tests the step handlers against a mocked platform client, a local
eth_account signer and an in-memory user store
"""
import asyncio
import pytest
from unittest.mock import AsyncMock, Mock

from onboarding.errors import PlatformAPIError, UserRejectedRequestError
from onboarding.flow import (
    DEFAULT_ERROR_MESSAGE,
    REJECTED_SIGNATURE_MESSAGE,
    ContractAddresses,
    TradingOnboarding,
)
from onboarding.poller import ProxyWalletPoller
from onboarding.signing import LocalAccountSigner
from onboarding.steps import ProxyStep, SigningStep, StepState, initial_proxy_state, initial_signing_state
from onboarding.store import UserStore, has_token_approvals, has_trading_auth


PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
PROXY = "0x1111111111111111111111111111111111111111"
RECIPIENT = "0x3333333333333333333333333333333333333333"

CONTRACTS = ContractAddresses(
    collateral_token="0x9c4e1703476e875070ee25b56a58b008cfb8fa78",
    conditional_tokens="0x69308fb512518e39f9b16112fa8d994f4e2bf8bb",
    ctf_exchange="0xdfe02eb6733538f8ea35d585af8de5958ad99e40",
    neg_risk_ctf_exchange="0xc5d563a36ae78145c45a50134d48a1215220f80a",
    proxy_factory="0xaacfeea03eb1561c4e67d661e40682bd20e3541b",
    multisend="0xa238cbeb142c10ef7ad8442c6d1f9e89e07e7761",
)


# ============================================================================
# Fixtures
# ============================================================================

def make_user(**overrides):
    user = {
        "id": "user-1",
        "address": LocalAccountSigner(PRIVATE_KEY).address,
        "proxy_wallet_address": None,
        "proxy_wallet_status": None,
        "settings": {},
    }
    user.update(overrides)
    return user


def deployed_user(**overrides):
    return make_user(proxy_wallet_address=PROXY, proxy_wallet_status="deployed", **overrides)


TRADING_AUTH_SETTINGS = {"tradingAuth": {"relayer": {"enabled": True}, "clob": {"enabled": True}}}


@pytest.fixture
def client():
    client = Mock()
    client.save_proxy_wallet_signature = AsyncMock()
    client.generate_trading_auth = AsyncMock()
    client.get_safe_nonce = AsyncMock(return_value="7")
    client.submit_safe_transaction = AsyncMock(return_value={})
    client.get_session = AsyncMock(return_value=None)
    return client


@pytest.fixture
def poller():
    poller = Mock()
    poller.stop = AsyncMock()
    return poller


def make_flow(user, client, poller, signer=None, clock=lambda: 1700000000.5):
    return TradingOnboarding(
        store=UserStore(user),
        signer=signer or LocalAccountSigner(PRIVATE_KEY),
        client=client,
        chain_id=80002,
        contracts=CONTRACTS,
        poller=poller,
        clock=clock,
    )


class RejectingSigner:
    address = PROXY

    async def sign_typed_data(self, typed_data):
        raise UserRejectedRequestError()

    async def sign_message_raw(self, digest):
        raise UserRejectedRequestError()


# ============================================================================
# Readiness predicate
# ============================================================================

@pytest.mark.asyncio
async def test_ready_from_local_steps_alone(client, poller):
    flow = make_flow(make_user(), client, poller)
    assert flow.trading_ready is False

    flow.proxy = StepState(ProxyStep.COMPLETED)
    flow.trading_auth = StepState(SigningStep.COMPLETED)
    flow.approvals = StepState(SigningStep.COMPLETED)

    assert flow.server_steps_complete is False
    assert flow.trading_ready is True


@pytest.mark.asyncio
async def test_ready_from_server_flags_alone(client, poller):
    settings = {"tradingAuth": {**TRADING_AUTH_SETTINGS["tradingAuth"], "approvals": {"enabled": True}}}
    flow = make_flow(deployed_user(settings=settings), client, poller)

    flow.proxy = initial_proxy_state()
    flow.trading_auth = initial_signing_state()
    flow.approvals = initial_signing_state()

    assert flow.local_steps_complete is False
    assert flow.trading_ready is True


@pytest.mark.asyncio
async def test_server_flags_complete_local_steps_and_never_regress(client, poller):
    flow = make_flow(deployed_user(), client, poller)
    assert flow.proxy.status is ProxyStep.COMPLETED

    flow.store.apply_proxy_wallet_update({"proxy_wallet_status": "deploying"})
    assert flow.proxy.status is ProxyStep.COMPLETED


@pytest.mark.asyncio
async def test_deploying_user_puts_proxy_step_in_deploying(client, poller):
    flow = make_flow(make_user(proxy_wallet_address=PROXY, proxy_wallet_status="deploying"), client, poller)
    assert flow.proxy.status is ProxyStep.DEPLOYING

    flow.reset_enable_flow_state()
    assert flow.proxy.status is ProxyStep.DEPLOYING


# ============================================================================
# Proxy wallet step
# ============================================================================

@pytest.mark.asyncio
async def test_rejected_proxy_signature_leaves_step_retryable(client, poller):
    flow = make_flow(make_user(), client, poller, signer=RejectingSigner())

    await flow.handle_proxy_wallet_signature()

    assert flow.proxy.status is ProxyStep.IDLE
    assert flow.proxy.error == REJECTED_SIGNATURE_MESSAGE
    client.save_proxy_wallet_signature.assert_not_called()


@pytest.mark.asyncio
async def test_backend_error_without_message_uses_default(client, poller):
    client.save_proxy_wallet_signature.side_effect = PlatformAPIError("")
    flow = make_flow(make_user(), client, poller)

    await flow.handle_proxy_wallet_signature()

    assert flow.proxy.status is ProxyStep.IDLE
    assert flow.proxy.error == DEFAULT_ERROR_MESSAGE


@pytest.mark.asyncio
async def test_proxy_signature_deploying_starts_polling(client, poller):
    client.save_proxy_wallet_signature.return_value = {
        "proxy_wallet_address": PROXY,
        "proxy_wallet_status": "deploying",
        "proxy_wallet_signature": "0xsig",
    }
    flow = make_flow(make_user(), client, poller)
    flow.start_deposit_flow()
    assert flow.enable_modal_open and flow.should_show_fund_after_proxy

    await flow.handle_proxy_wallet_signature()

    assert flow.proxy.status is ProxyStep.DEPLOYING
    assert flow.store.get_state()["proxy_wallet_address"] == PROXY
    poller.start.assert_called_once()
    assert flow.enable_modal_open is False
    assert flow.fund_modal_open is True

    signature = client.save_proxy_wallet_signature.await_args.args[0]
    assert signature.startswith("0x") and len(signature) == 132
    await flow.aclose()


@pytest.mark.asyncio
async def test_proxy_signature_deployed_completes(client, poller):
    client.save_proxy_wallet_signature.return_value = {
        "proxy_wallet_address": PROXY,
        "proxy_wallet_status": "deployed",
    }
    flow = make_flow(make_user(), client, poller)

    await flow.handle_proxy_wallet_signature()

    assert flow.proxy.status is ProxyStep.COMPLETED
    assert flow.proxy.error is None
    assert flow.has_deployed_proxy_wallet
    await flow.aclose()


# ============================================================================
# Trading auth step
# ============================================================================

@pytest.mark.asyncio
async def test_trading_auth_requires_sign_in(client, poller):
    flow = make_flow(None, client, poller)

    await flow.handle_trading_auth_signature()

    assert flow.trading_auth.status is SigningStep.IDLE
    assert flow.trading_auth.error == "Please sign in to continue."


@pytest.mark.asyncio
async def test_trading_auth_success_updates_store(client, poller):
    client.generate_trading_auth.return_value = {"relayer": {"enabled": True}, "clob": {"enabled": True}}
    flow = make_flow(deployed_user(), client, poller)

    await flow.handle_trading_auth_signature()

    assert flow.trading_auth.status is SigningStep.COMPLETED
    assert has_trading_auth(flow.store.get_state())
    kwargs = client.generate_trading_auth.await_args.kwargs
    assert kwargs["timestamp"] == "1700000000"
    assert kwargs["nonce"] == "0"
    await flow.aclose()


@pytest.mark.asyncio
async def test_trading_auth_rejection(client, poller):
    flow = make_flow(deployed_user(), client, poller, signer=RejectingSigner())

    await flow.handle_trading_auth_signature()

    assert flow.trading_auth.status is SigningStep.IDLE
    assert flow.trading_auth.error == REJECTED_SIGNATURE_MESSAGE


# ============================================================================
# Token approvals step
# ============================================================================

@pytest.mark.asyncio
async def test_approvals_preconditions(client, poller):
    flow = make_flow(make_user(), client, poller)
    await flow.handle_approve_tokens()
    assert flow.approvals.error == "Deploy your proxy wallet first."

    flow = make_flow(deployed_user(), client, poller)
    await flow.handle_approve_tokens()
    assert flow.approvals.error == "Enable trading before approving tokens."
    assert flow.approvals.status is SigningStep.IDLE
    client.get_safe_nonce.assert_not_called()


@pytest.mark.asyncio
async def test_approvals_submits_signed_multisend(client, poller):
    client.submit_safe_transaction.return_value = {"approvals": {"enabled": True}}
    flow = make_flow(deployed_user(settings=TRADING_AUTH_SETTINGS), client, poller)

    await flow.handle_approve_tokens()

    assert flow.approvals.status is SigningStep.COMPLETED
    assert has_token_approvals(flow.store.get_state())
    assert flow.trading_ready is True

    payload = client.submit_safe_transaction.await_args.args[0]
    assert payload["type"] == "SAFE"
    assert payload["metadata"] == "approve_tokens"
    assert payload["proxyWallet"] == PROXY
    assert payload["nonce"] == "7"
    assert payload["to"].lower() == CONTRACTS.multisend
    assert payload["data"].startswith("0x8d80ff0a")
    assert payload["signatureParams"]["operation"] == "1"

    signature = bytes.fromhex(payload["signature"][2:])
    assert len(signature) == 65
    assert signature[-1] in (31, 32)
    await flow.aclose()


@pytest.mark.asyncio
async def test_approvals_backend_failure_keeps_step_retryable(client, poller):
    client.get_safe_nonce.side_effect = PlatformAPIError("Safe nonce unavailable")
    flow = make_flow(deployed_user(settings=TRADING_AUTH_SETTINGS), client, poller)

    await flow.handle_approve_tokens()

    assert flow.approvals.status is SigningStep.IDLE
    assert flow.approvals.error == "Safe nonce unavailable"
    client.submit_safe_transaction.assert_not_called()


# ============================================================================
# Wallet send
# ============================================================================

@pytest.mark.asyncio
async def test_wallet_send_validation(client, poller):
    flow = make_flow(make_user(), client, poller)
    assert await flow.handle_wallet_send(RECIPIENT, "1") is False
    assert flow.wallet_send_error == "Deploy your proxy wallet first."

    flow = make_flow(deployed_user(), client, poller)
    assert await flow.handle_wallet_send("not-an-address", "1") is False
    assert flow.wallet_send_error == "Enter a valid recipient address."

    for amount in ("0", "-3", "abc", ""):
        assert await flow.handle_wallet_send(RECIPIENT, amount) is False
        assert flow.wallet_send_error == "Enter a valid amount."

    client.get_safe_nonce.assert_not_called()


@pytest.mark.asyncio
async def test_wallet_send_relays_transfer(client, poller):
    flow = make_flow(deployed_user(), client, poller)
    flow.wallet_modal_view = "send"

    assert await flow.handle_wallet_send(RECIPIENT, "12.5") is True

    payload = client.submit_safe_transaction.await_args.args[0]
    assert payload["metadata"] == "send_tokens"
    assert payload["to"].lower() == CONTRACTS.collateral_token
    assert payload["data"].startswith("0xa9059cbb")
    # 12.5 with 6 decimals
    assert payload["data"].endswith(format(12_500_000, "064x"))
    assert flow.wallet_modal_view == "menu"
    assert flow.is_wallet_sending is False
    assert flow.wallet_send_error is None


# ============================================================================
# UI intents
# ============================================================================

@pytest.mark.asyncio
async def test_ensure_trading_ready(client, poller):
    flow = make_flow(None, client, poller)
    assert flow.ensure_trading_ready() is False
    assert flow.sign_in_requested is True

    flow = make_flow(make_user(), client, poller)
    flow.proxy = flow.proxy.with_error("old error")
    assert flow.ensure_trading_ready() is False
    assert flow.trade_modal_open is True
    assert flow.proxy.error is None

    settings = {"tradingAuth": {**TRADING_AUTH_SETTINGS["tradingAuth"], "approvals": {"enabled": True}}}
    flow = make_flow(deployed_user(settings=settings), client, poller)
    assert flow.ensure_trading_ready() is True
    assert flow.trade_modal_open is False


@pytest.mark.asyncio
async def test_wallet_modal_and_deposit_routing(client, poller):
    flow = make_flow(make_user(), client, poller)
    flow.open_wallet_modal()
    assert flow.wallet_modal_open is False
    assert flow.trade_modal_open is True

    flow = make_flow(deployed_user(), client, poller)
    flow.start_deposit_flow()
    assert flow.wallet_modal_open is True
    assert flow.enable_modal_open is False
    assert flow.should_show_fund_after_proxy is False


@pytest.mark.asyncio
async def test_session_refresh_failure_is_swallowed(client, poller):
    client.get_session.side_effect = RuntimeError("session endpoint down")
    flow = make_flow(make_user(), client, poller)

    task = flow.refresh_session_user_state()
    await asyncio.wait_for(task, timeout=1)

    assert task.exception() is None
    assert flow.store.write_count == 0


@pytest.mark.asyncio
async def test_session_refresh_merges_user(client, poller):
    client.get_session.return_value = {"id": "user-1", "settings": TRADING_AUTH_SETTINGS}
    flow = make_flow(deployed_user(), client, poller)

    await flow.refresh_session_user_state()

    assert flow.has_trading_auth
    assert flow.trading_auth.status is SigningStep.COMPLETED


@pytest.mark.asyncio
async def test_sign_in_after_start_begins_polling(client):
    async def park(_delay):
        await asyncio.Event().wait()

    store = UserStore(None)
    client.get_proxy_details = AsyncMock(
        return_value={"proxy_wallet_address": PROXY, "proxy_wallet_status": "deploying"}
    )
    poller = ProxyWalletPoller(store, client, sleep=park)
    flow = TradingOnboarding(
        store=store,
        signer=LocalAccountSigner(PRIVATE_KEY),
        client=client,
        chain_id=80002,
        contracts=CONTRACTS,
        poller=poller,
    )

    assert flow.start() is None
    assert not poller.is_running

    store.apply_session_user(make_user())
    await asyncio.sleep(0.01)

    assert poller.is_running
    assert client.get_proxy_details.await_count == 1
    assert flow.proxy.status is ProxyStep.DEPLOYING

    await flow.aclose()
    assert not poller.is_running


@pytest.mark.asyncio
async def test_user_changes_before_start_do_not_poll(client):
    store = UserStore(None)
    client.get_proxy_details = AsyncMock()
    poller = ProxyWalletPoller(store, client)
    TradingOnboarding(
        store=store,
        signer=LocalAccountSigner(PRIVATE_KEY),
        client=client,
        chain_id=80002,
        contracts=CONTRACTS,
        poller=poller,
    )

    store.apply_session_user(make_user())
    await asyncio.sleep(0)

    assert not poller.is_running
    client.get_proxy_details.assert_not_called()
