"""
Trading onboarding flow

Drives the three readiness steps (proxy wallet, trading auth, token
approvals) plus the wallet send action. Step handlers never raise; a
failure leaves the step retryable with a message on its `error` field.

Readiness is reconciled from two sources: the local step states and the
server-reported flags on the shared user. Either being complete is enough.
UI intents (open the sign-in prompt, the enable dialog, the fund dialog,
...) are exposed as plain attributes for whatever renders the flow.
"""
import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set

from eth_utils import is_address

from config import Config
from utils.logger import get_logger

from .client import PlatformClient
from .errors import InvalidTransitionError, UserRejectedRequestError
from .poller import ProxyWalletPoller
from .safe import (
    aggregate_safe_transactions,
    build_approve_token_transactions,
    build_send_erc20_transaction,
    get_safe_tx_typed_data,
    parse_token_amount,
)
from .signing import (
    WalletSigner,
    build_create_proxy_typed_data,
    build_trading_auth_message,
    build_trading_auth_typed_data,
    hash_typed_data,
    pack_safe_signature,
)
from .steps import (
    ProxyStep,
    SigningStep,
    StepEvent,
    StepState,
    initial_proxy_state,
    initial_signing_state,
    transition_proxy,
    transition_signing,
)
from .store import (
    UserStore,
    has_deployed_proxy_wallet,
    has_token_approvals,
    has_trading_auth,
    is_proxy_wallet_deploying,
)

logger = get_logger(__name__)

DEFAULT_ERROR_MESSAGE = "Something went wrong. Please try again."
REJECTED_SIGNATURE_MESSAGE = "You rejected the signature request."
SIGN_IN_REQUIRED_MESSAGE = "Please sign in to continue."
PROXY_REQUIRED_MESSAGE = "Deploy your proxy wallet first."
TRADING_AUTH_REQUIRED_MESSAGE = "Enable trading before approving tokens."
INVALID_RECIPIENT_MESSAGE = "Enter a valid recipient address."
INVALID_AMOUNT_MESSAGE = "Enter a valid amount."

COLLATERAL_DECIMALS = 6


def failure_message(error: BaseException) -> str:
    """User-facing message for a failed step"""
    if isinstance(error, UserRejectedRequestError):
        return REJECTED_SIGNATURE_MESSAGE
    return str(error) or DEFAULT_ERROR_MESSAGE


@dataclass(frozen=True)
class ContractAddresses:
    collateral_token: str
    conditional_tokens: str
    ctf_exchange: str
    neg_risk_ctf_exchange: str
    proxy_factory: str
    multisend: str

    @classmethod
    def from_config(cls) -> "ContractAddresses":
        return cls(
            collateral_token=Config.COLLATERAL_TOKEN_ADDRESS,
            conditional_tokens=Config.CONDITIONAL_TOKENS_CONTRACT,
            ctf_exchange=Config.CTF_EXCHANGE_ADDRESS,
            neg_risk_ctf_exchange=Config.NEG_RISK_CTF_EXCHANGE_ADDRESS,
            proxy_factory=Config.SAFE_PROXY_FACTORY_ADDRESS,
            multisend=Config.SAFE_MULTISEND_ADDRESS,
        )


class TradingOnboarding:

    def __init__(
        self,
        store: UserStore,
        signer: WalletSigner,
        client: PlatformClient,
        chain_id: Optional[int] = None,
        contracts: Optional[ContractAddresses] = None,
        poller: Optional[ProxyWalletPoller] = None,
        clock: Callable[[], float] = time.time
    ):
        self.store = store
        self.signer = signer
        self.client = client
        self.chain_id = chain_id or Config.CHAIN_ID
        self.contracts = contracts or ContractAddresses.from_config()
        self.poller = poller or ProxyWalletPoller(store, client)
        self._clock = clock

        self.proxy: StepState = initial_proxy_state()
        self.trading_auth: StepState = initial_signing_state()
        self.approvals: StepState = initial_signing_state()

        # UI intents
        self.sign_in_requested = False
        self.enable_modal_open = False
        self.fund_modal_open = False
        self.trade_modal_open = False
        self.wallet_modal_open = False
        self.wallet_modal_view = "menu"
        self.should_show_fund_after_proxy = False

        self.wallet_send_error: Optional[str] = None
        self.is_wallet_sending = False

        self._background_tasks: Set[asyncio.Task] = set()
        self._polling_enabled = False
        self._unsubscribe = store.subscribe(self._on_user_changed)
        self.sync_steps_from_user()

    # ========================================================================
    # READINESS
    # ========================================================================

    @property
    def user(self) -> Optional[Dict[str, Any]]:
        return self.store.get_state()

    @property
    def has_deployed_proxy_wallet(self) -> bool:
        return has_deployed_proxy_wallet(self.user)

    @property
    def has_trading_auth(self) -> bool:
        return has_trading_auth(self.user)

    @property
    def has_token_approvals(self) -> bool:
        return has_token_approvals(self.user)

    @property
    def local_steps_complete(self) -> bool:
        return self.proxy.is_completed and self.trading_auth.is_completed and self.approvals.is_completed

    @property
    def server_steps_complete(self) -> bool:
        return self.has_trading_auth and self.has_deployed_proxy_wallet and self.has_token_approvals

    @property
    def trading_ready(self) -> bool:
        return self.server_steps_complete or self.local_steps_complete

    def sync_steps_from_user(self):
        """Move steps forward to match the server flags; never backward"""
        user = self.user
        if has_deployed_proxy_wallet(user):
            self.proxy = transition_proxy(self.proxy, StepEvent.SERVER_COMPLETED)
        elif is_proxy_wallet_deploying(user):
            self.proxy = transition_proxy(self.proxy, StepEvent.SERVER_DEPLOYING)

        if has_trading_auth(user):
            self.trading_auth = transition_signing(self.trading_auth, StepEvent.SERVER_COMPLETED)
        if has_token_approvals(user):
            self.approvals = transition_signing(self.approvals, StepEvent.SERVER_COMPLETED)

    def _advance_proxy(self, event: StepEvent, error: Optional[str] = None):
        try:
            self.proxy = transition_proxy(self.proxy, event, error)
        except InvalidTransitionError as e:
            # The step moved underneath an in-flight handler (dialog reset)
            logger.debug(f"Ignoring stale proxy step event: {e}")

    def _advance_signing(self, attr: str, event: StepEvent, error: Optional[str] = None):
        try:
            setattr(self, attr, transition_signing(getattr(self, attr), event, error))
        except InvalidTransitionError as e:
            logger.debug(f"Ignoring stale {attr} step event: {e}")

    # ========================================================================
    # STEP HANDLERS
    # ========================================================================

    async def handle_proxy_wallet_signature(self):
        if self.proxy.status is not ProxyStep.IDLE:
            return

        self.proxy = transition_proxy(self.proxy, StepEvent.START)
        try:
            typed_data = build_create_proxy_typed_data(self.chain_id, self.contracts.proxy_factory)
            signature = await self.signer.sign_typed_data(typed_data)
            data = await self.client.save_proxy_wallet_signature(signature)
        except Exception as e:
            logger.warning(f"Proxy wallet signature failed: {e}")
            self._advance_proxy(StepEvent.FAILED, failure_message(e))
            return

        status = data.get("proxy_wallet_status")
        if status == "deployed":
            self._advance_proxy(StepEvent.SUCCEEDED)
        elif status == "deploying":
            self._advance_proxy(StepEvent.DEPLOYING)
        else:
            self._advance_proxy(StepEvent.UNCONFIRMED)

        self.store.apply_proxy_wallet_update(data)
        self.refresh_session_user_state()
        self.poller.start()

        self.enable_modal_open = False
        if self.should_show_fund_after_proxy:
            self.fund_modal_open = True
        self.should_show_fund_after_proxy = False

    async def handle_trading_auth_signature(self):
        user = self.user
        if not user or not user.get("address"):
            self.trading_auth = self.trading_auth.with_error(SIGN_IN_REQUIRED_MESSAGE)
            return
        if self.trading_auth.status is not SigningStep.IDLE:
            return

        self.trading_auth = transition_signing(self.trading_auth, StepEvent.START)
        try:
            timestamp = str(int(self._clock()))
            message = build_trading_auth_message(user["address"], timestamp)
            signature = await self.signer.sign_typed_data(
                build_trading_auth_typed_data(self.chain_id, message)
            )
            data = await self.client.generate_trading_auth(
                signature=signature,
                timestamp=timestamp,
                nonce=str(message["nonce"]),
            )
        except Exception as e:
            logger.warning(f"Trading auth signature failed: {e}")
            self._advance_signing("trading_auth", StepEvent.FAILED, failure_message(e))
            return

        self._advance_signing("trading_auth", StepEvent.SUCCEEDED)
        self.store.apply_trading_auth_update(relayer=data.get("relayer"), clob=data.get("clob"))
        self.refresh_session_user_state()

    async def _sign_and_submit_safe_transaction(self, transaction, metadata: str) -> Dict[str, Any]:
        user = self.user
        nonce = await self.client.get_safe_nonce()
        typed_data, signature_params = get_safe_tx_typed_data(
            chain_id=self.chain_id,
            safe_address=user["proxy_wallet_address"],
            transaction=transaction,
            nonce=nonce,
        )
        signature = await self.signer.sign_message_raw(hash_typed_data(typed_data))

        return await self.client.submit_safe_transaction({
            "type": "SAFE",
            "from": user["address"],
            "to": transaction.to,
            "proxyWallet": user["proxy_wallet_address"],
            "data": transaction.data,
            "nonce": nonce,
            "signature": pack_safe_signature(signature),
            "signatureParams": signature_params,
            "metadata": metadata,
        })

    async def handle_approve_tokens(self):
        user = self.user
        if not user or not user.get("address") or not user.get("proxy_wallet_address"):
            self.approvals = self.approvals.with_error(PROXY_REQUIRED_MESSAGE)
            return
        if not (self.has_trading_auth or self.trading_auth.is_completed):
            self.approvals = self.approvals.with_error(TRADING_AUTH_REQUIRED_MESSAGE)
            return
        if self.approvals.status is not SigningStep.IDLE:
            return

        self.approvals = transition_signing(self.approvals, StepEvent.START)
        try:
            transactions = build_approve_token_transactions(
                spender=self.contracts.conditional_tokens,
                operators=[self.contracts.ctf_exchange, self.contracts.neg_risk_ctf_exchange],
                collateral_token=self.contracts.collateral_token,
                conditional_tokens=self.contracts.conditional_tokens,
            )
            aggregated = aggregate_safe_transactions(transactions, self.contracts.multisend)
            result = await self._sign_and_submit_safe_transaction(aggregated, "approve_tokens")
        except Exception as e:
            logger.error(f"Failed to approve tokens: {e}", exc_info=True)
            self._advance_signing("approvals", StepEvent.FAILED, failure_message(e))
            return

        if result.get("approvals"):
            self.store.apply_approvals_update(result["approvals"])
            self.refresh_session_user_state()

        self._advance_signing("approvals", StepEvent.SUCCEEDED)

    async def handle_wallet_send(self, to: str, amount: str) -> bool:
        """
        Send collateral from the proxy wallet to `to`

        Returns:
            True when the transfer was relayed
        """
        self.wallet_send_error = None

        user = self.user
        if not user or not user.get("address") or not user.get("proxy_wallet_address"):
            self.wallet_send_error = PROXY_REQUIRED_MESSAGE
            return False
        if not to or not is_address(to):
            self.wallet_send_error = INVALID_RECIPIENT_MESSAGE
            return False
        try:
            parse_token_amount(amount, COLLATERAL_DECIMALS)
        except ValueError:
            self.wallet_send_error = INVALID_AMOUNT_MESSAGE
            return False

        self.is_wallet_sending = True
        try:
            transaction = build_send_erc20_transaction(
                token=self.contracts.collateral_token,
                to=to,
                amount=amount,
                decimals=COLLATERAL_DECIMALS,
            )
            await self._sign_and_submit_safe_transaction(transaction, "send_tokens")
        except Exception as e:
            logger.warning(f"Wallet send failed: {e}")
            self.wallet_send_error = failure_message(e)
            return False
        finally:
            self.is_wallet_sending = False

        self.wallet_modal_view = "menu"
        return True

    # ========================================================================
    # UI INTENTS
    # ========================================================================

    def reset_enable_flow_state(self):
        """Clear step errors; non-completed steps go back to their resting state"""
        self.proxy = transition_proxy(self.proxy, StepEvent.RESET)
        self.trading_auth = transition_signing(self.trading_auth, StepEvent.RESET)
        self.approvals = transition_signing(self.approvals, StepEvent.RESET)

    def _request_sign_in(self):
        self.sign_in_requested = True

    def ensure_trading_ready(self) -> bool:
        """True when trading may proceed; otherwise opens whatever is missing"""
        if not self.user:
            self._request_sign_in()
            return False
        if self.trading_ready:
            return True

        self.reset_enable_flow_state()
        self.trade_modal_open = True
        return False

    def open_trade_requirements(self):
        if not self.user:
            self._request_sign_in()
            return
        self.reset_enable_flow_state()
        self.trade_modal_open = True

    def open_wallet_modal(self):
        if not self.user:
            self._request_sign_in()
            return
        if not self.has_deployed_proxy_wallet:
            self.open_trade_requirements()
            return
        self.wallet_modal_view = "menu"
        self.wallet_modal_open = True

    def close_wallet_modal(self):
        self.wallet_modal_open = False
        self.wallet_modal_view = "menu"
        self.wallet_send_error = None
        self.is_wallet_sending = False

    def start_deposit_flow(self):
        if not self.user:
            self._request_sign_in()
            return
        if self.has_deployed_proxy_wallet:
            self.open_wallet_modal()
            return

        self.reset_enable_flow_state()
        self.should_show_fund_after_proxy = True
        self.enable_modal_open = True

    def close_enable_modal(self):
        self.enable_modal_open = False
        self.should_show_fund_after_proxy = False

    def close_fund_modal(self):
        self.fund_modal_open = False
        self.should_show_fund_after_proxy = False

    # ========================================================================
    # SESSION REFRESH / LIFECYCLE
    # ========================================================================

    async def _refresh_session(self):
        try:
            session_user = await self.client.get_session()
        except Exception as e:
            logger.error(f"Failed to refresh user session: {e}")
            return
        if session_user:
            self.store.apply_session_user(session_user)

    def refresh_session_user_state(self) -> asyncio.Task:
        """Fire-and-forget session refresh; failures are only logged"""
        task = asyncio.create_task(self._refresh_session())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    def _on_user_changed(self, _user):
        self.sync_steps_from_user()
        # Sign-in or a proxy field change can make polling necessary again
        if self._polling_enabled and self.poller.needs_sync():
            self.poller.start()

    def start(self):
        """Start background proxy wallet polling, now and whenever the user later needs it"""
        self._polling_enabled = True
        return self.poller.start()

    async def aclose(self):
        self._polling_enabled = False
        await self.poller.stop()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._unsubscribe()
