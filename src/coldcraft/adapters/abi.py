"""Contract call encoding helpers.

Selectors and argument encoding for the token standards the pipeline
crafts directly, plus generic encoding/decoding for arbitrary calls.
"""

import logging
from typing import Any, Optional

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError, EncodingError
from eth_utils import keccak, to_checksum_address

logger = logging.getLogger(__name__)

# ERC-20
ERC20_TRANSFER = "transfer(address,uint256)"
ERC20_APPROVE = "approve(address,uint256)"

# ERC-721
ERC721_SAFE_TRANSFER_FROM = "safeTransferFrom(address,address,uint256)"
ERC721_TRANSFER_FROM = "transferFrom(address,address,uint256)"

ERC20_TRANSFER_SELECTOR = bytes.fromhex("a9059cbb")
ERC20_APPROVE_SELECTOR = bytes.fromhex("095ea7b3")
ERC721_SAFE_TRANSFER_FROM_SELECTOR = bytes.fromhex("42842e0e")
ERC721_TRANSFER_FROM_SELECTOR = bytes.fromhex("23b872dd")

KNOWN_SIGNATURES = {
    ERC20_TRANSFER_SELECTOR: ERC20_TRANSFER,
    ERC20_APPROVE_SELECTOR: ERC20_APPROVE,
    ERC721_SAFE_TRANSFER_FROM_SELECTOR: ERC721_SAFE_TRANSFER_FROM,
    ERC721_TRANSFER_FROM_SELECTOR: ERC721_TRANSFER_FROM,
}


class AbiError(ValueError):
    """Function signature or arguments cannot be encoded."""
    pass


def split_types(type_list: str) -> list[str]:
    """Split a comma-separated type list, respecting tuple parentheses."""
    types = []
    depth = 0
    current = ""
    for char in type_list:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        if char == "," and depth == 0:
            types.append(current.strip())
            current = ""
        else:
            current += char
    if current.strip():
        types.append(current.strip())
    return types


def parse_signature(signature: str) -> tuple[str, list[str]]:
    """Parse "name(type1,type2)" into its name and argument types.

    Raises:
        AbiError: If the signature is not canonical
    """
    text = signature.strip()
    open_idx = text.find("(")
    if open_idx <= 0 or not text.endswith(")"):
        raise AbiError(f"Invalid function signature: {signature!r}")

    name = text[:open_idx]
    if not name.replace("_", "a").replace("$", "a").isalnum() or name[0].isdigit():
        raise AbiError(f"Invalid function name in {signature!r}")

    types = split_types(text[open_idx + 1:-1])
    if " " in "".join(types):
        raise AbiError(f"Signature must be canonical (no names or spaces): {signature!r}")
    return name, types


def canonical_signature(signature: str) -> str:
    name, types = parse_signature(signature)
    return f"{name}({','.join(types)})"


def function_selector(signature: str) -> bytes:
    """First four bytes of keccak256 of the canonical signature."""
    return keccak(text=canonical_signature(signature))[:4]


def _coerce(abi_type: str, value: Any) -> Any:
    """Accept JSON-friendly argument forms (hex strings, decimal strings)."""
    if abi_type.endswith("]"):
        inner = abi_type[:abi_type.rindex("[")]
        return [_coerce(inner, item) for item in value]
    if abi_type.startswith("(") and abi_type.endswith(")"):
        inner_types = split_types(abi_type[1:-1])
        return tuple(_coerce(t, v) for t, v in zip(inner_types, value))
    if abi_type.startswith(("uint", "int")) and isinstance(value, str):
        return int(value, 0)
    if abi_type.startswith("bytes") and isinstance(value, str):
        return bytes.fromhex(value[2:] if value.startswith("0x") else value)
    if abi_type == "bool" and isinstance(value, str):
        return value.lower() == "true"
    return value


def encode_call(signature: str, args: Any = ()) -> bytes:
    """Encode calldata for a function call.

    Args:
        signature: Canonical signature, e.g. "transfer(address,uint256)"
        args: Positional arguments

    Returns:
        selector || abi-encoded arguments

    Raises:
        AbiError: If the signature is invalid or the arguments don't fit
    """
    _, types = parse_signature(signature)
    args = list(args)
    if len(args) != len(types):
        raise AbiError(f"{signature} takes {len(types)} arguments, got {len(args)}")

    try:
        values = [_coerce(t, a) for t, a in zip(types, args)]
        encoded = encode(types, values)
    except (EncodingError, TypeError, ValueError, OverflowError) as e:
        raise AbiError(f"Cannot encode arguments for {signature}: {e}")

    return function_selector(signature) + encoded


def erc20_transfer(recipient: str, amount: int) -> bytes:
    return encode_call(ERC20_TRANSFER, [recipient, amount])


def erc20_approve(spender: str, amount: int) -> bytes:
    return encode_call(ERC20_APPROVE, [spender, amount])


def erc721_transfer(sender: str, recipient: str, token_id: int, safe: bool = True) -> bytes:
    signature = ERC721_SAFE_TRANSFER_FROM if safe else ERC721_TRANSFER_FROM
    return encode_call(signature, [sender, recipient, token_id])


def decode_known_call(data: bytes) -> Optional[tuple[str, tuple]]:
    """Decode calldata for one of the token standard calls.

    Returns:
        (signature, arguments) or None if the selector is not known
    """
    signature = KNOWN_SIGNATURES.get(data[:4])
    if signature is None:
        return None
    _, types = parse_signature(signature)
    try:
        values = decode(types, data[4:])
    except (DecodingError, ValueError):
        return None
    return signature, tuple(
        to_checksum_address(v) if t == "address" else v for t, v in zip(types, values)
    )


def _format_value(value: Any) -> str:
    if isinstance(value, bytes):
        return "0x" + value.hex()
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(_format_value(v) for v in value) + "]"
    return str(value)


def describe_call(data: bytes, abi: Optional[list] = None) -> Optional[str]:
    """Human-readable description of calldata using a contract ABI.

    Only used for display; returns None when the ABI has no matching function
    or the data does not decode.
    """
    if len(data) < 4 or not abi:
        return None

    selector = data[:4]
    for entry in abi:
        if entry.get("type", "function") != "function":
            continue
        inputs = entry.get("inputs", [])
        types = [_abi_type(i) for i in inputs]
        signature = f"{entry.get('name', '')}({','.join(types)})"
        try:
            if function_selector(signature) != selector:
                continue
        except AbiError:
            continue

        try:
            values = decode(types, data[4:])
        except (DecodingError, ValueError) as e:
            logger.debug(f"Calldata does not decode as {signature}: {e}")
            return None

        parts = []
        for i, (item, value) in enumerate(zip(inputs, values)):
            label = item.get("name") or f"arg{i}"
            parts.append(f"{label}={_format_value(value)}")
        return f"{entry['name']}({', '.join(parts)})"

    return None


def _abi_type(item: dict) -> str:
    """Canonical type for an ABI input, expanding tuples."""
    abi_type = item["type"]
    if abi_type.startswith("tuple"):
        inner = ",".join(_abi_type(c) for c in item.get("components", []))
        return f"({inner}){abi_type[len('tuple'):]}"
    return abi_type
