"""
Quote Oracle Module

REST client for converting a fiat amount into native-asset minor units through
an external swap quote. A failed or unusable quote always raises
QuoteUnavailable; no price is ever synthesized as a fallback.
"""

import httpx
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, localcontext
from typing import Optional, Union

from .errors import QuoteUnavailable, InvalidAmount
from .logging_config import get_logger, log_action
from .units import FIAT_UNIT, NATIVE_UNIT, DECIMAL_PRECISION, parse_amount, to_minor_units

logger = get_logger("wallet_ledger.quotes")


@dataclass(frozen=True)
class QuoteResult:
    """A swap quote bound into an approval"""
    amount_minor_units: int  # Native minor units out
    quote_reference: str
    fiat_amount: Decimal
    latency_ms: float = 0.0


def new_quote_reference() -> str:
    return f"q_{uuid.uuid4().hex}"


class QuoteOracle(ABC):
    """Abstract fiat -> native quote source"""
    
    @abstractmethod
    def quote(self, fiat_amount: Union[str, Decimal]) -> QuoteResult:
        """Quote how many native minor units ``fiat_amount`` buys"""
        pass
    
    def health_check(self) -> bool:
        return True
    
    def close(self) -> None:
        pass


class SkipQuoteOracle(QuoteOracle):
    """Quotes USDC -> native ETH swaps through the Skip fungible API"""
    
    USDC_DENOM = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"
    NATIVE_DENOM = "ethereum-native"
    CHAIN_ID = "1"
    
    def __init__(
        self,
        base_url: str = "https://api.skip.build",
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        fee_recipient: str = "0x742d35Cc6634C0532925a3b8D4C9db96c728b0B4",
        slippage_percent: str = "1",
        client: Optional[httpx.Client] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.fee_recipient = fee_recipient
        self.slippage_percent = slippage_percent
        self._client = client or httpx.Client(timeout=timeout)
    
    def _build_request(self, amount_in: int) -> dict:
        return {
            "source_asset_denom": self.USDC_DENOM,
            "source_asset_chain_id": self.CHAIN_ID,
            "dest_asset_denom": self.NATIVE_DENOM,
            "dest_asset_chain_id": self.CHAIN_ID,
            "amount_in": str(amount_in),
            "chain_ids_to_addresses": {self.CHAIN_ID: self.fee_recipient},
            "slippage_tolerance_percent": self.slippage_percent,
            "smart_swap_options": {"evm_swaps": True},
            "allow_unsafe": False,
        }
    
    def quote(self, fiat_amount: Union[str, Decimal]) -> QuoteResult:
        """Quote a fiat amount via the Skip API
        
        Args:
            fiat_amount: Fiat display amount (USD, settled as USDC)
        
        Returns:
            QuoteResult carrying the quoted native minor units
        
        Raises:
            QuoteUnavailable: On transport errors, non-200 responses or an
                unusable ``amount_out``
        """
        amount = parse_amount(fiat_amount)
        # USDC has 6 decimals; sub-micro-dollar precision is dropped
        amount_in = to_minor_units(amount, FIAT_UNIT, truncate=True)
        
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        
        start = time.time()
        try:
            response = self._client.post(
                f"{self.base_url}/v2/fungible/msgs_direct",
                json=self._build_request(amount_in),
                headers=headers
            )
        except httpx.HTTPError as e:
            logger.error(f"Skip quote request failed: {e}")
            raise QuoteUnavailable("Quote service unreachable") from e
        
        latency_ms = (time.time() - start) * 1000
        
        if response.status_code != 200:
            logger.warning(f"Skip returned {response.status_code}: {response.text[:200]}")
            raise QuoteUnavailable(f"Quote service returned {response.status_code}")
        
        try:
            data = response.json()
            amount_out = int(str(data["amount_out"]))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Skip response carried no usable amount_out: {e}")
            raise QuoteUnavailable("Quote service returned no amount") from e
        
        if amount_out <= 0:
            raise QuoteUnavailable("Quote service returned a non-positive amount")
        
        result = QuoteResult(
            amount_minor_units=amount_out,
            quote_reference=new_quote_reference(),
            fiat_amount=amount,
            latency_ms=latency_ms
        )
        
        log_action(
            logger, "info", "Swap quote obtained",
            action="quote", resource=f"quote:{result.quote_reference}",
            extra={
                "fiat_amount": str(amount),
                "amount_in": str(amount_in),
                "amount_out": str(amount_out),
                "latency_ms": round(latency_ms, 2)
            }
        )
        return result
    
    def health_check(self) -> bool:
        """Check if the quote service answers"""
        try:
            r = self._client.get(f"{self.base_url}/v2/info/chains")
            return r.status_code == 200
        except httpx.HTTPError:
            return False
    
    def close(self) -> None:
        """Close the HTTP client"""
        self._client.close()


class FixedRateQuoteOracle(QuoteOracle):
    """Deterministic quotes at a fixed native-per-fiat rate, for development and tests"""
    
    def __init__(self, native_per_fiat: Union[str, Decimal]):
        try:
            self.native_per_fiat = parse_amount(native_per_fiat)
        except InvalidAmount as e:
            raise ValueError(f"Invalid fixed quote rate: {native_per_fiat}") from e
    
    def set_rate(self, native_per_fiat: Union[str, Decimal]) -> None:
        self.native_per_fiat = parse_amount(native_per_fiat)
    
    def quote(self, fiat_amount: Union[str, Decimal]) -> QuoteResult:
        amount = parse_amount(fiat_amount)
        with localcontext() as ctx:
            ctx.prec = DECIMAL_PRECISION
            native = (amount * self.native_per_fiat).quantize(
                Decimal(1).scaleb(-NATIVE_UNIT.decimals), rounding=ROUND_DOWN
            )
        if native <= 0:
            raise QuoteUnavailable("Quoted amount rounds to zero")
        return QuoteResult(
            amount_minor_units=to_minor_units(native, NATIVE_UNIT),
            quote_reference=new_quote_reference(),
            fiat_amount=amount
        )


def create_quote_oracle(config) -> QuoteOracle:
    """Create the configured quote oracle"""
    provider = config.quote_provider.lower()
    if provider == "fixed":
        return FixedRateQuoteOracle(config.fixed_native_per_fiat)
    if provider == "skip":
        return SkipQuoteOracle(
            base_url=config.skip_api_url,
            api_key=config.skip_api_key or None,
            timeout=config.skip_timeout,
            fee_recipient=config.skip_fee_recipient,
            slippage_percent=config.skip_slippage_percent
        )
    raise ValueError(f"Unknown quote provider: {config.quote_provider}")
