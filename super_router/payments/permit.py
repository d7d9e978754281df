"""
EIP-712 typed data for the token's EIP-2612 Permit
Shared by the buyer-side signer and the router's signature check
"""

from eth_account import Account
from eth_account.messages import encode_typed_data
from web3 import Web3

PERMIT_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "Permit": [
        {"name": "owner", "type": "address"},
        {"name": "spender", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
        {"name": "deadline", "type": "uint256"},
    ],
}


def permit_typed_data(
    token_name: str,
    token_version: str,
    chain_id: int,
    token_address: str,
    owner: str,
    spender: str,
    value: int,
    nonce: int,
    deadline: int,
) -> dict:
    """Create EIP-712 typed data for a Permit"""
    return {
        "types": PERMIT_TYPES,
        "primaryType": "Permit",
        "domain": {
            "name": token_name,
            "version": token_version,
            "chainId": chain_id,
            "verifyingContract": Web3.to_checksum_address(token_address),
        },
        "message": {
            "owner": Web3.to_checksum_address(owner),
            "spender": Web3.to_checksum_address(spender),
            "value": value,
            "nonce": nonce,
            "deadline": deadline,
        },
    }


def recover_permit_signer(typed_data: dict, signature: str) -> str:
    """Address that produced `signature` over the typed data"""
    encoded = encode_typed_data(full_message=typed_data)
    return Account.recover_message(encoded, signature=signature)
