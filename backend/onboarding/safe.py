"""
Safe (proxy wallet) transaction builders

Calls are ABI-encoded with eth_abi. Several calls are batched into a single
delegatecall to the MultiSend contract.
"""
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import IntEnum
from typing import Any, Dict, List, Sequence, Tuple, Union

from eth_abi import encode as eth_abi_encode
from eth_utils import is_address, keccak, to_checksum_address

from .signing import ZERO_ADDRESS, build_safe_tx_typed_data

MAX_UINT256 = 2 ** 256 - 1


class OperationType(IntEnum):
    CALL = 0
    DELEGATE_CALL = 1


@dataclass(frozen=True)
class SafeTransaction:
    to: str
    data: str
    value: str = "0"
    operation: OperationType = OperationType.CALL


def _selector(signature: str) -> bytes:
    return keccak(text=signature)[:4]


def _encode_call(signature: str, arg_types: List[str], args: List[Any]) -> str:
    return "0x" + (_selector(signature) + eth_abi_encode(arg_types, args)).hex()


def encode_erc20_approve(spender: str, amount: int) -> str:
    return _encode_call(
        "approve(address,uint256)",
        ["address", "uint256"],
        [to_checksum_address(spender), amount],
    )


def encode_erc1155_set_approval_for_all(operator: str, approved: bool) -> str:
    return _encode_call(
        "setApprovalForAll(address,bool)",
        ["address", "bool"],
        [to_checksum_address(operator), approved],
    )


def encode_erc20_transfer(to: str, amount: int) -> str:
    return _encode_call(
        "transfer(address,uint256)",
        ["address", "uint256"],
        [to_checksum_address(to), amount],
    )


def parse_token_amount(amount: Union[str, int, float, Decimal], decimals: int) -> int:
    """
    Convert a human amount ("12.5") to base units, truncating extra precision

    Raises:
        ValueError: not a finite positive number
    """
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError):
        raise ValueError(f"Invalid amount: {amount!r}")

    if not value.is_finite() or value <= 0:
        raise ValueError(f"Invalid amount: {amount!r}")

    units = int(value.scaleb(decimals))
    if units <= 0:
        raise ValueError(f"Amount too small: {amount!r}")
    return units


def build_approve_token_transactions(
    spender: str,
    operators: Sequence[str],
    collateral_token: str,
    conditional_tokens: str,
) -> List[SafeTransaction]:
    """
    Approvals needed before trading

    Collateral is approved for the conditional-tokens contract, then for each
    exchange operator both the collateral allowance and the conditional-token
    operator approval are granted.
    """
    transactions = [
        SafeTransaction(
            to=to_checksum_address(collateral_token),
            data=encode_erc20_approve(spender, MAX_UINT256),
        )
    ]
    for operator in operators:
        transactions.append(SafeTransaction(
            to=to_checksum_address(collateral_token),
            data=encode_erc20_approve(operator, MAX_UINT256),
        ))
        transactions.append(SafeTransaction(
            to=to_checksum_address(conditional_tokens),
            data=encode_erc1155_set_approval_for_all(operator, True),
        ))
    return transactions


def build_send_erc20_transaction(token: str, to: str, amount: Union[str, Decimal], decimals: int = 6) -> SafeTransaction:
    if not is_address(to):
        raise ValueError(f"Invalid recipient address: {to!r}")
    return SafeTransaction(
        to=to_checksum_address(token),
        data=encode_erc20_transfer(to, parse_token_amount(amount, decimals)),
    )


def encode_multisend(transactions: Sequence[SafeTransaction]) -> str:
    """Packed MultiSend payload: operation | to | value | data length | data per call"""
    packed = b""
    for tx in transactions:
        data = bytes.fromhex(tx.data[2:] if tx.data.startswith("0x") else tx.data)
        packed += (
            int(tx.operation).to_bytes(1, "big")
            + bytes.fromhex(to_checksum_address(tx.to)[2:])
            + int(tx.value).to_bytes(32, "big")
            + len(data).to_bytes(32, "big")
            + data
        )
    return _encode_call("multiSend(bytes)", ["bytes"], [packed])


def aggregate_safe_transactions(transactions: Sequence[SafeTransaction], multisend_address: str) -> SafeTransaction:
    if not transactions:
        raise ValueError("No transactions to aggregate")
    if len(transactions) == 1:
        return transactions[0]
    return SafeTransaction(
        to=to_checksum_address(multisend_address),
        data=encode_multisend(transactions),
        operation=OperationType.DELEGATE_CALL,
    )


def get_safe_tx_typed_data(
    chain_id: int,
    safe_address: str,
    transaction: SafeTransaction,
    nonce: Union[int, str],
) -> Tuple[Dict[str, Any], Dict[str, str]]:
    """
    SafeTx typed data plus the signature parameters the relayer expects

    Gas fields are zero; the relayer pays for execution.
    """
    typed_data = build_safe_tx_typed_data(
        chain_id=chain_id,
        safe_address=safe_address,
        to=transaction.to,
        data=transaction.data,
        nonce=nonce,
        value=transaction.value,
        operation=int(transaction.operation),
    )
    signature_params = {
        "gasPrice": "0",
        "operation": str(int(transaction.operation)),
        "safeTxnGas": "0",
        "baseGas": "0",
        "gasToken": ZERO_ADDRESS,
        "refundReceiver": ZERO_ADDRESS,
    }
    return typed_data, signature_params
