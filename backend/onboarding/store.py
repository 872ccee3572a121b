"""
Shared session-user state for the onboarding flow

The store holds one user dict (or None when signed out). Writers go through
set_state(updater); an updater that returns the previous object unchanged
is a no-op, so subscribers are only notified on real changes. Named merge
helpers cover the writers the flow and the poller need.
"""
from typing import Any, Callable, Dict, List, Optional

from utils.logger import get_logger

logger = get_logger(__name__)

User = Dict[str, Any]
Listener = Callable[[Optional[User]], None]

PROXY_WALLET_FIELDS = (
    "proxy_wallet_address",
    "proxy_wallet_signature",
    "proxy_wallet_signed_at",
    "proxy_wallet_status",
    "proxy_wallet_tx_hash",
)


class UserStore:
    """In-memory holder for the signed-in user with change notification"""

    def __init__(self, user: Optional[User] = None):
        self._state: Optional[User] = user
        self._listeners: List[Listener] = []
        self.write_count = 0

    def get_state(self) -> Optional[User]:
        return self._state

    def set_state(self, updater: Callable[[Optional[User]], Optional[User]]) -> bool:
        """
        Replace the state with updater(previous)

        Returns:
            True if a new state was written, False if the updater kept the
            previous object
        """
        previous = self._state
        next_state = updater(previous)
        if next_state is previous:
            return False

        self._state = next_state
        self.write_count += 1
        for listener in list(self._listeners):
            try:
                listener(next_state)
            except Exception as e:
                logger.error(f"User store listener failed: {e}", exc_info=True)
        return True

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def apply_proxy_wallet_update(self, data: Dict[str, Any]) -> bool:
        """
        Merge proxy wallet fields into the user

        Fields missing from `data` (or None) keep their previous value. When
        every field already matches, nothing is written.
        """
        def updater(previous):
            if not previous:
                return previous

            merged = {}
            for field in PROXY_WALLET_FIELDS:
                value = data.get(field)
                merged[field] = value if value is not None else previous.get(field)

            if all(previous.get(field) == merged[field] for field in PROXY_WALLET_FIELDS):
                return previous
            return {**previous, **merged}

        return self.set_state(updater)

    def apply_trading_auth_update(
        self,
        relayer: Optional[Dict[str, Any]] = None,
        clob: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Merge relayer/clob trading-auth entries into user settings"""
        def updater(previous):
            if not previous:
                return previous

            settings = previous.get("settings") or {}
            trading_auth = settings.get("tradingAuth") or {}
            updated = dict(trading_auth)
            if relayer is not None:
                updated["relayer"] = {**(trading_auth.get("relayer") or {}), **relayer}
            if clob is not None:
                updated["clob"] = {**(trading_auth.get("clob") or {}), **clob}
            if updated == trading_auth:
                return previous

            return {
                **previous,
                "settings": {**settings, "tradingAuth": updated},
            }

        return self.set_state(updater)

    def apply_approvals_update(self, approvals: Dict[str, Any]) -> bool:
        """Merge the token approval entry into user settings"""
        def updater(previous):
            if not previous:
                return previous

            settings = previous.get("settings") or {}
            trading_auth = settings.get("tradingAuth") or {}
            current = trading_auth.get("approvals") or {}
            merged = {**current, **approvals}
            if merged == current:
                return previous

            return {
                **previous,
                "settings": {
                    **settings,
                    "tradingAuth": {**trading_auth, "approvals": merged},
                },
            }

        return self.set_state(updater)

    def apply_session_user(self, session_user: Optional[User]) -> bool:
        """
        Merge a freshly fetched session user over the current one

        Keeps the local address/email/image when the session omits them and
        deep-merges settings.
        """
        if not session_user:
            return False

        def updater(previous):
            if not previous:
                return dict(session_user)

            merged = {
                **previous,
                **session_user,
                "address": session_user.get("address") or previous.get("address"),
                "email": session_user.get("email") or previous.get("email"),
                "image": session_user.get("image") or previous.get("image"),
                "settings": {
                    **(previous.get("settings") or {}),
                    **(session_user.get("settings") or {}),
                },
            }
            if merged == previous:
                return previous
            return merged

        return self.set_state(updater)


# ============================================================================
# SERVER-DERIVED READINESS FLAGS
# ============================================================================

def has_deployed_proxy_wallet(user: Optional[User]) -> bool:
    return bool(
        user
        and user.get("proxy_wallet_address")
        and user.get("proxy_wallet_status") == "deployed"
    )


def is_proxy_wallet_deploying(user: Optional[User]) -> bool:
    return bool(
        user
        and user.get("proxy_wallet_address")
        and user.get("proxy_wallet_status") == "deploying"
    )


def has_trading_auth(user: Optional[User]) -> bool:
    trading_auth = ((user or {}).get("settings") or {}).get("tradingAuth") or {}
    relayer = trading_auth.get("relayer") or {}
    clob = trading_auth.get("clob") or {}
    return bool(relayer.get("enabled") and clob.get("enabled"))


def has_token_approvals(user: Optional[User]) -> bool:
    trading_auth = ((user or {}).get("settings") or {}).get("tradingAuth") or {}
    approvals = trading_auth.get("approvals") or {}
    return bool(approvals.get("enabled"))
