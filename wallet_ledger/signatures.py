"""
Signature Verification Module

Recovers the signing address of a personal-sign (EIP-191) message and checks
it against the claimed sender. Stateless.
"""

from eth_account import Account
from eth_account.messages import encode_defunct

from .errors import SignatureInvalid
from .logging_config import get_logger

logger = get_logger("wallet_ledger.signatures")


def recover_signer(message: str, signature: str) -> str:
    """
    Recover the address that signed ``message``
    
    Raises:
        SignatureInvalid: If the signature is missing or cannot be decoded
    """
    if not message or not signature:
        raise SignatureInvalid("Message and signature are required")
    
    try:
        signable = encode_defunct(text=message)
        return Account.recover_message(signable, signature=signature)
    except Exception as e:
        logger.debug(f"Signature recovery failed: {e}")
        raise SignatureInvalid("Invalid signature") from e


def verify_signature(message: str, signature: str, expected_address: str) -> str:
    """
    Check that ``signature`` over ``message`` was produced by ``expected_address``
    
    Returns:
        The recovered address (checksummed)
    
    Raises:
        SignatureInvalid: On any mismatch
    """
    recovered = recover_signer(message, signature)
    if recovered.lower() != (expected_address or "").lower():
        raise SignatureInvalid("Invalid signature")
    return recovered
