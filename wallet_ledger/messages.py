"""
Approval Message Codec

Builds and parses the canonical, human-readable message a wallet signs to
authorize a transfer. The expiry is part of the signed text, so it cannot be
extended without invalidating the signature. The trailing
``Expires: <epoch-ms>`` marker is always the last token of the message.

Canonical forms::

    Transfer 2.0 ETH to 0x... from 0x.... Nonce: 9f.... Expires: 1718000000000
    Transfer 0.05 ETH ($100 USD) to 0x... from 0x.... Quote: q_1a.... Nonce: 9f.... Expires: 1718000000000
"""

from dataclasses import dataclass
from typing import Optional
import re
import secrets

from .errors import MalformedMessage, ValidationError


EXPIRY_PATTERN = re.compile(r"Expires: (?P<expires>\S+)$")
QUOTE_REFERENCE_PATTERN = re.compile(r"^[A-Za-z0-9_\-]+$")
NONCE_PATTERN = re.compile(r"^[0-9a-f]+$")

MESSAGE_PATTERN = re.compile(
    r"^Transfer (?P<amount>\d+(?:\.\d+)?) (?P<unit>[A-Z]+)"
    r"(?: \(\$(?P<fiat>\d+(?:\.\d+)?) (?P<fiat_label>[A-Z]+)\))?"
    r" to (?P<to>0x[0-9a-fA-F]{40}) from (?P<from>0x[0-9a-fA-F]{40})\."
    r"(?: Quote: (?P<quote>[A-Za-z0-9_\-]+)\.)?"
    r"(?: Nonce: (?P<nonce>[0-9a-f]+)\.)?"
    r" Expires: (?P<expires>\d+)$"
)

NONCE_BYTES = 16


@dataclass(frozen=True)
class MessageTerms:
    """Every term embedded in an approval message"""
    from_address: str
    to_address: str
    amount: str
    unit_label: str
    expires_at: int
    fiat_amount: Optional[str] = None
    fiat_label: Optional[str] = None
    quote_reference: Optional[str] = None
    nonce: Optional[str] = None
    
    @property
    def is_fiat(self) -> bool:
        return self.fiat_amount is not None
    
    def to_message(self) -> str:
        return build_message(
            self.from_address,
            self.to_address,
            self.amount,
            self.unit_label,
            self.expires_at,
            fiat_amount=self.fiat_amount,
            fiat_label=self.fiat_label or "USD",
            quote_reference=self.quote_reference,
            nonce=self.nonce,
        )


def new_nonce() -> str:
    """Random single-use token embedded in each approval"""
    return secrets.token_hex(NONCE_BYTES)


def build_message(
    from_address: str,
    to_address: str,
    amount_display: str,
    unit_label: str,
    expires_at: int,
    fiat_amount: Optional[str] = None,
    fiat_label: str = "USD",
    quote_reference: Optional[str] = None,
    nonce: Optional[str] = None,
) -> str:
    """
    Build the canonical authorization message
    
    Args:
        from_address: Sender address
        to_address: Recipient address
        amount_display: Native display amount (e.g. "2.0")
        unit_label: Native unit tag (e.g. "ETH")
        expires_at: Expiry as epoch milliseconds
        fiat_amount: Fiat display amount for fiat-denominated transfers
        fiat_label: Fiat unit tag
        quote_reference: Reference of the bound swap quote
        nonce: Single-use approval token
        
    Returns:
        Message string to be signed by the sender
    """
    if quote_reference is not None and not QUOTE_REFERENCE_PATTERN.match(quote_reference):
        raise ValidationError(f"Invalid quote reference '{quote_reference}'")
    if nonce is not None and not NONCE_PATTERN.match(nonce):
        raise ValidationError("Invalid nonce")
    
    amount_text = f"{amount_display} {unit_label}"
    if fiat_amount is not None:
        amount_text += f" (${fiat_amount} {fiat_label})"
    
    parts = [f"Transfer {amount_text} to {to_address} from {from_address}."]
    if quote_reference is not None:
        parts.append(f"Quote: {quote_reference}.")
    if nonce is not None:
        parts.append(f"Nonce: {nonce}.")
    parts.append(f"Expires: {int(expires_at)}")
    return " ".join(parts)


def parse_expiry(message: str) -> int:
    """
    Extract the expiry timestamp (epoch ms) from a message
    
    Raises:
        MalformedMessage: If the marker is absent or not numeric
    """
    if not message or not isinstance(message, str):
        raise MalformedMessage("Message is empty")
    
    match = EXPIRY_PATTERN.search(message.rstrip())
    if not match:
        raise MalformedMessage("Message carries no expiry")
    
    value = match.group("expires")
    if not value.isdigit():
        raise MalformedMessage(f"Expiry '{value}' is not numeric")
    return int(value)


def parse_message(message: str) -> MessageTerms:
    """
    Parse every term out of a canonical message
    
    The message must round-trip: rebuilding it from the parsed terms has to
    reproduce the exact text.
    
    Raises:
        MalformedMessage: If the text is not a canonical approval message
    """
    expires_at = parse_expiry(message)
    
    match = MESSAGE_PATTERN.match(message)
    if not match:
        raise MalformedMessage("Message is not a canonical transfer approval")
    
    terms = MessageTerms(
        from_address=match.group("from"),
        to_address=match.group("to"),
        amount=match.group("amount"),
        unit_label=match.group("unit"),
        expires_at=expires_at,
        fiat_amount=match.group("fiat"),
        fiat_label=match.group("fiat_label"),
        quote_reference=match.group("quote"),
        nonce=match.group("nonce"),
    )
    
    if terms.to_message() != message:
        raise MalformedMessage("Message is not in canonical form")
    return terms
