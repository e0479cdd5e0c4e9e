"""
Shared test helpers: deterministic keys, message signing and a settable clock
"""

from eth_account import Account
from eth_account.messages import encode_defunct

SENDER_KEY = "0x" + "11" * 32
RECIPIENT_KEY = "0x" + "22" * 32
OTHER_KEY = "0x" + "33" * 32

START_MS = 1_700_000_000_000


def wallet(key: str = SENDER_KEY):
    return Account.from_key(key)


def sign(account, message: str) -> str:
    """Personal-sign ``message`` and return the 0x-prefixed signature"""
    signed = account.sign_message(encode_defunct(text=message))
    return "0x" + bytes(signed.signature).hex()


class FakeClock:
    """Epoch-millisecond clock that only moves when told to"""
    
    def __init__(self, now_ms: int = START_MS):
        self.now_ms = now_ms
    
    def __call__(self) -> int:
        return self.now_ms
    
    def advance(self, ms: int) -> None:
        self.now_ms += ms
