"""Tests for verification codes — issued on acceptance, consumed once."""

from tradeflow.codes.issuer import CodeIssuer, normalize_code
from tradeflow.errors import ErrorKind
from tradeflow.models.requests import RedeemCodeRequest
from tradeflow.policy.resolver import PolicyResolver

from conftest import CUSTODIAN, FixedClock, Workflow, ctx, keyed


def _code_for(workflow: Workflow) -> tuple[str, str]:
    lot_id, data = workflow.accepted_lot()
    return lot_id, data["acceptance"]["verification_code"]


class TestCodeGeneration:
    def test_length_and_alphabet(self, resolver: PolicyResolver) -> None:
        issuer = CodeIssuer(resolver)
        policy = resolver.code_policy()
        for _ in range(50):
            code = issuer.generate()
            assert len(code) == policy.length
            assert set(code) <= set(policy.alphabet)

    def test_no_look_alike_characters(self, resolver: PolicyResolver) -> None:
        assert not set("01IO") & set(resolver.code_policy().alphabet)

    def test_normalize(self) -> None:
        assert normalize_code("  ab12cd34 ") == "AB12CD34"


class TestIssuance:
    def test_acceptance_binds_one_code(self, workflow: Workflow) -> None:
        lot_id, code = _code_for(workflow)
        record = workflow.service.get_code(code)

        assert record.lot_id == lot_id
        assert record.offer_id == workflow.service.get_acceptance(lot_id).offer_id
        assert not record.consumed
        assert (record.expires_utc - record.issued_utc).days == 30


class TestRedeem:
    def test_first_redemption_consumes(self, workflow: Workflow) -> None:
        service = workflow.service
        lot_id, code = _code_for(workflow)

        result = service.redeem_code(keyed(CUSTODIAN), RedeemCodeRequest(code))

        assert result.success, result.errors
        assert result.data["consumed"] is True
        assert result.data["consumed_by"] == CUSTODIAN
        kinds = [e.event_kind.value for e in service.history_for_lot(lot_id)]
        assert kinds[-1] == "code_redeemed"

    def test_repeat_returns_same_record(self, workflow: Workflow, clock: FixedClock) -> None:
        service = workflow.service
        lot_id, code = _code_for(workflow)
        first = service.redeem_code(keyed(CUSTODIAN), RedeemCodeRequest(code))
        events = len(service.history_for_lot(lot_id))
        clock.advance(hours=2)

        again = service.redeem_code(keyed(CUSTODIAN), RedeemCodeRequest(code))

        assert again.success
        assert not again.replayed
        assert again.data["consumed_utc"] == first.data["consumed_utc"]
        assert len(service.history_for_lot(lot_id)) == events

    def test_input_is_normalized(self, workflow: Workflow) -> None:
        _, code = _code_for(workflow)
        result = workflow.service.redeem_code(
            keyed(CUSTODIAN), RedeemCodeRequest(f"  {code.lower()} "),
        )
        assert result.success, result.errors
        assert result.data["code"] == code

    def test_unknown_code(self, workflow: Workflow) -> None:
        result = workflow.service.redeem_code(keyed(CUSTODIAN), RedeemCodeRequest("ZZZZZZZZ"))
        assert result.error_kind == ErrorKind.NOT_FOUND

    def test_lapsed_code(self, workflow: Workflow, clock: FixedClock) -> None:
        service = workflow.service
        _, code = _code_for(workflow)
        clock.advance(days=30)

        result = service.redeem_code(keyed(CUSTODIAN), RedeemCodeRequest(code))

        assert result.error_kind == ErrorKind.ALREADY_EXPIRED
        assert not service.get_code(code).consumed

    def test_consumed_code_survives_expiry(self, workflow: Workflow, clock: FixedClock) -> None:
        _, code = _code_for(workflow)
        workflow.service.redeem_code(keyed(CUSTODIAN), RedeemCodeRequest(code))
        clock.advance(days=45)
        result = workflow.service.redeem_code(keyed(CUSTODIAN), RedeemCodeRequest(code))
        assert result.success

    def test_key_required(self, workflow: Workflow) -> None:
        _, code = _code_for(workflow)
        result = workflow.service.redeem_code(ctx(CUSTODIAN), RedeemCodeRequest(code))
        assert result.error_kind == ErrorKind.VALIDATION
