"""
Units and Amount Handling Module

Converts between human-readable display amounts and integer minor units.
Balances and transfer amounts are ALWAYS integers in minor units; Decimal is
used only to parse and format display strings. NEVER uses float.
"""

from decimal import Decimal, InvalidOperation, ROUND_DOWN, localcontext
from enum import Enum
from typing import Optional, Union
import re

from .errors import InvalidAmount, ValidationError


# Wide enough for any 256-bit minor-unit value
DECIMAL_PRECISION = 90
MAX_MINOR_UNITS = 2 ** 256 - 1

ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class Unit(Enum):
    """Settlement units with their fixed decimal scale"""
    ETH = ("ETH", 18)   # Native asset, wei minor units
    USDC = ("USDC", 6)  # Fiat settlement token used for swap quotes
    
    def __init__(self, code: str, decimals: int):
        self.code = code
        self.decimals = decimals
    
    @property
    def scale(self) -> int:
        return 10 ** self.decimals


NATIVE_UNIT = Unit.ETH
FIAT_UNIT = Unit.USDC
FIAT_LABEL = "USD"


class CurrencyMode(Enum):
    """How the caller denominated the transfer amount"""
    NATIVE = "native"
    FIAT = "fiat"
    
    @classmethod
    def parse(cls, value: Union[str, "CurrencyMode", None]) -> "CurrencyMode":
        """Accept the enum, its value, or the unit names the client uses"""
        if isinstance(value, CurrencyMode):
            return value
        if value is None:
            return cls.NATIVE
        aliases = {
            "native": cls.NATIVE,
            "eth": cls.NATIVE,
            "fiat": cls.FIAT,
            "usd": cls.FIAT,
        }
        mode = aliases.get(str(value).strip().lower())
        if mode is None:
            raise ValidationError(f"Unknown currency mode '{value}'")
        return mode


def parse_amount(value: Union[str, int, Decimal, None]) -> Decimal:
    """
    Parse a display amount into a positive, finite Decimal
    
    Raises:
        InvalidAmount: If the value is missing, unparsable, not finite or not positive
    """
    if value is None or isinstance(value, bool):
        raise InvalidAmount("Amount required")
    
    text = str(value).strip()
    if not text:
        raise InvalidAmount("Amount required")
    
    try:
        amount = Decimal(text)
    except InvalidOperation:
        raise InvalidAmount(f"Cannot parse amount '{value}'")
    
    if not amount.is_finite():
        raise InvalidAmount("Amount must be a finite number")
    if amount <= 0:
        raise InvalidAmount("Amount must be positive")
    return amount


def to_minor_units(amount: Union[str, int, Decimal], unit: Unit = NATIVE_UNIT,
                   truncate: bool = False) -> int:
    """
    Convert a display amount to integer minor units
    
    Args:
        amount: Display amount (string, int or Decimal)
        unit: Unit defining the decimal scale
        truncate: Round toward zero instead of rejecting excess precision
        
    Returns:
        Amount in minor units
        
    Raises:
        InvalidAmount: If the amount is invalid or has more decimals than the
            unit supports and truncate is False
    """
    value = parse_amount(amount)
    
    with localcontext() as ctx:
        ctx.prec = DECIMAL_PRECISION
        scaled = value.scaleb(unit.decimals)
        whole = scaled.to_integral_value(rounding=ROUND_DOWN)
        if whole != scaled and not truncate:
            raise InvalidAmount(
                f"Amount {value} exceeds {unit.decimals} decimal places for {unit.code}"
            )
        if whole > MAX_MINOR_UNITS:
            raise InvalidAmount(f"Amount {value} is too large")
    
    minor = int(whole)
    if minor <= 0:
        raise InvalidAmount(f"Amount {value} is below one minor unit of {unit.code}")
    return minor


def format_minor_units(minor_units: int, unit: Unit = NATIVE_UNIT) -> str:
    """
    Format minor units as a display string without losing precision.
    
    Always keeps at least one fractional digit ("2.0", "0.05").
    """
    minor_units = int(minor_units)
    sign = "-" if minor_units < 0 else ""
    whole, fraction = divmod(abs(minor_units), unit.scale)
    if unit.decimals == 0:
        return f"{sign}{whole}"
    fraction_text = str(fraction).rjust(unit.decimals, "0").rstrip("0") or "0"
    return f"{sign}{whole}.{fraction_text}"


def format_fiat(amount: Union[str, Decimal]) -> str:
    """Canonical display text for a fiat amount"""
    value = parse_amount(amount)
    text = format(value.normalize(), "f")
    return text


def normalize_address(address: Optional[str], field: str = "address") -> str:
    """Validate a hex account address and return its lower-cased form"""
    if not address or not isinstance(address, str):
        raise ValidationError(f"{field} is required")
    candidate = address.strip()
    if not ADDRESS_PATTERN.match(candidate):
        raise ValidationError(f"{field} '{address}' is not a valid address")
    return candidate.lower()


def normalize_email(email: Optional[str]) -> Optional[str]:
    if email is None:
        return None
    candidate = email.strip()
    if not candidate:
        return None
    if not EMAIL_PATTERN.match(candidate):
        raise ValidationError(f"'{email}' is not a valid email address")
    return candidate
