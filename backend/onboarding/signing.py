"""
Wallet signing for the onboarding steps

Typed-data payloads follow EIP-712 in the `full_message` form accepted by
eth_account (types incl. EIP712Domain, primaryType, domain, message).
"""
from typing import Any, Dict, Optional, Protocol, Union

from eth_account import Account
from eth_account.messages import _hash_eip191_message, encode_defunct, encode_typed_data
from eth_utils import to_checksum_address

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

CREATE_PROXY_DOMAIN_NAME = "Polymarket Contract Proxy Factory"
TRADING_AUTH_DOMAIN_NAME = "ClobAuthDomain"
TRADING_AUTH_DOMAIN_VERSION = "1"
TRADING_AUTH_MESSAGE = "This message attests that I control the given wallet"

CREATE_PROXY_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "CreateProxy": [
        {"name": "paymentToken", "type": "address"},
        {"name": "payment", "type": "uint256"},
        {"name": "paymentReceiver", "type": "address"},
    ],
}

TRADING_AUTH_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
    ],
    "ClobAuth": [
        {"name": "address", "type": "address"},
        {"name": "timestamp", "type": "string"},
        {"name": "nonce", "type": "uint256"},
        {"name": "message", "type": "string"},
    ],
}

SAFE_TX_TYPES = {
    "EIP712Domain": [
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "SafeTx": [
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "data", "type": "bytes"},
        {"name": "operation", "type": "uint8"},
        {"name": "safeTxGas", "type": "uint256"},
        {"name": "baseGas", "type": "uint256"},
        {"name": "gasPrice", "type": "uint256"},
        {"name": "gasToken", "type": "address"},
        {"name": "refundReceiver", "type": "address"},
        {"name": "nonce", "type": "uint256"},
    ],
}


class WalletSigner(Protocol):
    """Signing collaborator; raises UserRejectedRequestError when the owner declines"""

    address: str

    async def sign_typed_data(self, typed_data: Dict[str, Any]) -> str:
        ...

    async def sign_message_raw(self, digest: bytes) -> str:
        ...


def _to_hex(value: bytes) -> str:
    hex_value = value.hex()
    if not hex_value.startswith("0x"):
        hex_value = "0x" + hex_value
    return hex_value


def _to_bytes(value: Union[str, bytes]) -> bytes:
    if isinstance(value, bytes):
        return value
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


class LocalAccountSigner:
    """WalletSigner backed by a local private key"""

    def __init__(self, private_key: str):
        self._account = Account.from_key(private_key)
        self.address = self._account.address

    async def sign_typed_data(self, typed_data: Dict[str, Any]) -> str:
        signed = self._account.sign_message(encode_typed_data(full_message=typed_data))
        return _to_hex(signed.signature)

    async def sign_message_raw(self, digest: bytes) -> str:
        signed = self._account.sign_message(encode_defunct(primitive=digest))
        return _to_hex(signed.signature)


def hash_typed_data(typed_data: Dict[str, Any]) -> bytes:
    """EIP-712 digest of a full typed-data message"""
    return _hash_eip191_message(encode_typed_data(full_message=typed_data))


def build_create_proxy_typed_data(chain_id: int, factory_address: str) -> Dict[str, Any]:
    return {
        "types": CREATE_PROXY_TYPES,
        "primaryType": "CreateProxy",
        "domain": {
            "name": CREATE_PROXY_DOMAIN_NAME,
            "chainId": chain_id,
            "verifyingContract": to_checksum_address(factory_address),
        },
        "message": {
            "paymentToken": ZERO_ADDRESS,
            "payment": 0,
            "paymentReceiver": ZERO_ADDRESS,
        },
    }


def build_trading_auth_message(address: str, timestamp: str, nonce: int = 0) -> Dict[str, Any]:
    return {
        "address": to_checksum_address(address),
        "timestamp": timestamp,
        "nonce": nonce,
        "message": TRADING_AUTH_MESSAGE,
    }


def build_trading_auth_typed_data(chain_id: int, message: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "types": TRADING_AUTH_TYPES,
        "primaryType": "ClobAuth",
        "domain": {
            "name": TRADING_AUTH_DOMAIN_NAME,
            "version": TRADING_AUTH_DOMAIN_VERSION,
            "chainId": chain_id,
        },
        "message": message,
    }


def build_safe_tx_typed_data(
    chain_id: int,
    safe_address: str,
    to: str,
    data: str,
    nonce: Union[int, str],
    value: Union[int, str] = 0,
    operation: int = 0,
    safe_tx_gas: int = 0,
    base_gas: int = 0,
    gas_price: int = 0,
    gas_token: str = ZERO_ADDRESS,
    refund_receiver: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "types": SAFE_TX_TYPES,
        "primaryType": "SafeTx",
        "domain": {
            "chainId": chain_id,
            "verifyingContract": to_checksum_address(safe_address),
        },
        "message": {
            "to": to_checksum_address(to),
            "value": int(value),
            "data": _to_bytes(data),
            "operation": operation,
            "safeTxGas": safe_tx_gas,
            "baseGas": base_gas,
            "gasPrice": gas_price,
            "gasToken": gas_token,
            "refundReceiver": refund_receiver or ZERO_ADDRESS,
            "nonce": int(nonce),
        },
    }


def pack_safe_signature(signature: str) -> str:
    """
    Re-encode a 65-byte eth_sign signature for a Safe

    Safe tells eth_sign signatures apart from typed-data ones by v > 30, so
    v in {27, 28} becomes {31, 32} and v in {0, 1} becomes {31, 32}.
    """
    raw = _to_bytes(signature)
    if len(raw) != 65:
        raise ValueError(f"Expected a 65-byte signature, got {len(raw)} bytes")

    r, s, v = raw[:32], raw[32:64], raw[64]
    if v in (0, 1):
        v += 31
    elif v in (27, 28):
        v += 4
    return _to_hex(r + s + bytes([v]))
