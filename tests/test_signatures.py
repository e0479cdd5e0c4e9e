"""
Tests for personal-sign signature verification
"""

import pytest

from wallet_ledger.errors import SignatureInvalid
from wallet_ledger.signatures import recover_signer, verify_signature

from helpers import OTHER_KEY, sign, wallet


class TestSignatureVerification:
    
    def setup_method(self):
        self.account = wallet()
        self.message = "Transfer 1.0 ETH to 0x1563915e194d8cfba1943570603f7606a3115508 from me. Expires: 1"
        self.signature = sign(self.account, self.message)
    
    def test_recover_signer(self):
        assert recover_signer(self.message, self.signature) == self.account.address
    
    def test_verify_is_case_insensitive(self):
        recovered = verify_signature(self.message, self.signature, self.account.address.lower())
        assert recovered == self.account.address
        verify_signature(self.message, self.signature, self.account.address.upper().replace("0X", "0x"))
    
    def test_signature_from_another_key_rejected(self):
        other_signature = sign(wallet(OTHER_KEY), self.message)
        with pytest.raises(SignatureInvalid):
            verify_signature(self.message, other_signature, self.account.address)
    
    def test_signature_over_different_message_rejected(self):
        """A valid signature for some other text never authorizes this one"""
        with pytest.raises(SignatureInvalid):
            verify_signature(self.message + " ", self.signature, self.account.address)
    
    @pytest.mark.parametrize("signature", ["", "0x", "0x1234", "not-hex", "0x" + "00" * 65])
    def test_malformed_signature_rejected(self, signature):
        with pytest.raises(SignatureInvalid):
            verify_signature(self.message, signature, self.account.address)
    
    def test_missing_message_rejected(self):
        with pytest.raises(SignatureInvalid):
            recover_signer("", self.signature)
