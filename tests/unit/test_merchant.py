"""
Unit tests for merchant claims.
"""

import pytest

from pingate import merchant
from pingate.errors import Conflict, NotFound, ValidationError
from pingate.models import MerchantClaim


@pytest.fixture
def merchant_location(db, location):
    location.is_bitcoin_merchant = True
    db.commit()
    return location


def _claim(db, location, device_session, invoice_id="dev_claim", status="pending"):
    claim = MerchantClaim(
        provider="dev",
        invoice_id=invoice_id,
        amount_sats=1000,
        status=status,
        location_id=location.id,
        device_session_id=device_session.id,
        claim_code="ABCD1234",
    )
    db.add(claim)
    db.commit()
    return claim


class TestClaimCodes:
    def test_generated_code_shape(self):
        code = merchant.generate_claim_code()

        assert len(code) == 8
        assert code == code.upper()

    def test_blank_code_is_generated(self):
        assert len(merchant.normalize_claim_code(None)) == 8
        assert len(merchant.normalize_claim_code("")) == 8

    def test_code_uppercased(self):
        assert merchant.normalize_claim_code(" joes42 ") == "JOES42"

    @pytest.mark.parametrize("code", ["abc", "x" * 17, "bad-code", 1234])
    def test_invalid_codes(self, code):
        with pytest.raises(ValidationError):
            merchant.normalize_claim_code(code)


class TestCheckClaimable:
    def test_missing_location(self, db, device_session):
        with pytest.raises(NotFound):
            merchant.check_claimable(db, None, device_session.id)

    def test_non_merchant_location(self, db, location, device_session):
        with pytest.raises(ValidationError, match="merchant locations"):
            merchant.check_claimable(db, location, device_session.id)

    def test_pending_claim_blocks_same_device(self, db, merchant_location, device_session, other_device_session):
        _claim(db, merchant_location, device_session)

        with pytest.raises(Conflict, match="pending claim"):
            merchant.check_claimable(db, merchant_location, device_session.id)
        merchant.check_claimable(db, merchant_location, other_device_session.id)

    def test_claimed_location(self, db, merchant_location, device_session, other_device_session):
        _claim(db, merchant_location, device_session, status="verified")

        with pytest.raises(Conflict, match="already been claimed"):
            merchant.check_claimable(db, merchant_location, other_device_session.id)


class TestVerifyAndRevoke:
    def test_verify_marks_location_claimed(self, db, merchant_location, device_session):
        claim = _claim(db, merchant_location, device_session)

        assert merchant.verify_claim(db, claim) is True
        db.commit()
        db.refresh(claim)
        db.refresh(merchant_location)

        assert claim.status == "verified"
        assert claim.paid_at is not None
        assert merchant.is_location_claimed(db, merchant_location.id)
        assert merchant_location.is_claimed is True

    def test_second_claim_not_verified(self, db, merchant_location, device_session, other_device_session):
        first = _claim(db, merchant_location, device_session, invoice_id="dev_1")
        second = _claim(db, merchant_location, other_device_session, invoice_id="dev_2")

        assert merchant.verify_claim(db, first) is True
        assert merchant.verify_claim(db, second) is False
        assert merchant.get_location_claim(db, merchant_location.id).id == first.id

    def test_verify_twice_is_noop(self, db, merchant_location, device_session):
        claim = _claim(db, merchant_location, device_session)

        assert merchant.verify_claim(db, claim) is True
        assert merchant.verify_claim(db, claim) is False

    def test_revoke_releases_location(self, db, merchant_location, device_session):
        claim = _claim(db, merchant_location, device_session)
        merchant.verify_claim(db, claim)

        revoked = merchant.revoke_claim(db, claim.id)
        db.commit()
        db.refresh(merchant_location)

        assert revoked.status == "revoked"
        assert merchant_location.is_claimed is False
        assert not merchant.is_location_claimed(db, merchant_location.id)

    def test_revoke_pending_claim_conflicts(self, db, merchant_location, device_session):
        claim = _claim(db, merchant_location, device_session)

        with pytest.raises(Conflict, match="pending"):
            merchant.revoke_claim(db, claim.id)

    def test_revoke_unknown_claim(self, db):
        with pytest.raises(NotFound):
            merchant.revoke_claim(db, "missing")
