"""ERA parsing and payment posting tests."""

import pytest

from flowiq import claims, payment_posting
from flowiq.errors import ConflictError, EraParseError, InvalidTransitionError, ValidationError
from flowiq.time_utils import utc_now


def _isa() -> str:
    segment = '*'.join(
        [
            'ISA', '00', ' ' * 10, '00', ' ' * 10, 'ZZ', 'AETNA'.ljust(15), 'ZZ', 'SPINESLEEP'.ljust(15),
            '300310', '1200', '^', '00501', '000000123', '0', 'P', ':',
        ]
    )
    assert len(segment) == 105
    return segment + '~'


def _era(claim_number: str, paid: str = '250', adjustment: str = '50', extra: str = '', status: str = '1') -> str:
    body = [
        'GS*HP*AETNA*SPINESLEEP*20300310*1200*1*X*005010X221A1',
        'ST*835*0001',
        'BPR*I*' + paid + '*C*CHK' + '*' * 12 + '20300310',
        'TRN*1*CHK12345*1512345678',
        'N1*PR*AETNA',
        f'CLP*{claim_number}*{status}*300*{paid}*20*12*PAYERCLM1',
    ]
    if adjustment:
        body.append(f'CAS*CO*45*{adjustment}')
    body.append('DTM*232*20300301')
    body.append(extra)
    body.extend(['SE*10*0001', 'GE*1*1', 'IEA*1*000000123'])
    return _isa() + '~'.join(segment for segment in body if segment) + '~'


@pytest.fixture
def submitted_claim(db_session, tenant, patient):
    claim = claims.create_claim(
        db_session,
        tenant.id,
        {'patient_id': patient.id, 'diagnosis_codes': ['I10'], 'procedure_codes': ['99213'], 'total_amount': 300},
    )
    claims.transition_claim(db_session, tenant.id, claim.id, 'submitted')
    return claim


def test_parse_era_reads_header_and_claim_loops():
    text = _era('CLM-1', extra='CLP*CLM-2*4*120*0*0*12*PAYERCLM2~CAS*PR*1*30**2*10')
    first, second = payment_posting.parse_era(text)

    assert first.claim_reference == 'CLM-1'
    assert first.paid_amount == 250.0
    assert first.charge_amount == 300.0
    assert first.patient_responsibility == 20.0
    assert first.payer_name == 'AETNA'
    assert first.check_number == 'CHK12345'
    assert first.era_number == '000000123'
    assert first.payment_date.isoformat() == '2030-03-10'
    assert first.service_date.isoformat() == '2030-03-01'
    assert first.adjustments == [{'group': 'CO', 'reasonCode': '45', 'amount': 50.0, 'type': 'contractual'}]

    assert second.claim_reference == 'CLM-2'
    assert [adj['type'] for adj in second.adjustments] == ['deductible', 'coinsurance']
    assert second.adjustment_total == 40.0


def test_parse_era_without_isa_uses_default_separators():
    records = payment_posting.parse_era('N1*PR*BCBS~CLP*CLM-9*1*50*50*0~')
    assert records[0].payer_name == 'BCBS'
    assert records[0].era_number is None


@pytest.mark.parametrize(
    'text',
    ['', '   ', 'ST*835*0001~SE*2*0001~', 'CLP**1*10*10~', 'CLP*CLM-1*1*ten*10~'],
)
def test_parse_era_errors(text):
    with pytest.raises(EraParseError):
        payment_posting.parse_era(text)


def test_era_parse_error_is_a_validation_error():
    assert issubclass(EraParseError, ValidationError)


def test_score_payment(submitted_claim):
    assert payment_posting.score_payment(None, 'AETNA', 10, 0) == (0.0, ['Claim not found'])
    assert payment_posting.score_payment(submitted_claim, 'Aetna Health', 250, 50) == (1.0, [])
    assert payment_posting.score_payment(submitted_claim, 'Cigna', 250, 0) == (
        0.6,
        ['Payer mismatch', 'Amount discrepancy detected'],
    )


def test_matching_payment_is_auto_posted(db_session, tenant, submitted_claim):
    result = payment_posting.process_era_file(db_session, tenant.id, _era(submitted_claim.claim_number))
    assert result['total'] == 1
    assert result['posted'] == 1
    assert result['pendingReview'] == 0
    assert result['totalPaid'] == 250.0
    record = result['records'][0]
    assert record['status'] == 'posted'
    assert record['autoPosted'] is True
    assert record['confidence'] == 1.0

    # 250 paid plus 50 contractual write-off settles the claim
    assert submitted_claim.status == 'paid'
    assert submitted_claim.paid_amount == 250.0
    payment = payment_posting.get_payment(db_session, tenant.id, record['paymentId'])
    assert payment.claim_id == submitted_claim.id
    assert payment.posted_at is not None


def test_duplicate_file_is_flagged(db_session, tenant, submitted_claim):
    text = _era(submitted_claim.claim_number)
    payment_posting.process_era_file(db_session, tenant.id, text)
    again = payment_posting.process_era_file(db_session, tenant.id, text)
    assert again['duplicates'] == 1
    assert again['posted'] == 0
    assert again['records'][0]['status'] == 'duplicate'
    assert submitted_claim.paid_amount == 250.0


def test_unknown_claim_waits_for_review(db_session, tenant):
    result = payment_posting.process_era_file(db_session, tenant.id, _era('CLM-UNKNOWN'))
    record = result['records'][0]
    assert record['status'] == 'pending_review'
    assert record['errors'] == ['Claim not found']
    assert result['pendingReview'] == 1


def test_underpayment_reconcile_and_manual_post(db_session, tenant, submitted_claim):
    result = payment_posting.process_era_file(
        db_session, tenant.id, _era(submitted_claim.claim_number, paid='100', adjustment='')
    )
    payment_id = result['records'][0]['paymentId']
    assert result['records'][0]['confidence'] == 0.8

    today = utc_now().date()
    summary = payment_posting.reconcile_payments(db_session, tenant.id, today, today)
    assert summary['reconciled'] == 0
    (discrepancy,) = summary['discrepancies']
    assert discrepancy['paymentId'] == payment_id
    assert discrepancy['expectedAmount'] == 300.0
    assert discrepancy['actualAmount'] == 100.0
    assert discrepancy['description'] == 'Amount discrepancy detected'

    payment = payment_posting.post_payment_manually(db_session, tenant.id, payment_id)
    assert payment.status == 'posted'
    assert payment.auto_posted is False
    assert submitted_claim.status == 'partially_paid'
    with pytest.raises(ConflictError):
        payment_posting.post_payment_manually(db_session, tenant.id, payment_id)


def test_manual_post_needs_claim(db_session, tenant):
    result = payment_posting.process_era_file(db_session, tenant.id, _era('CLM-UNKNOWN'))
    with pytest.raises(ValidationError):
        payment_posting.post_payment_manually(db_session, tenant.id, result['records'][0]['paymentId'])


def test_payment_on_denied_claim_moves_through_appeal(db_session, tenant, submitted_claim):
    claims.transition_claim(db_session, tenant.id, submitted_claim.id, 'denied', denial_reason='CO-16')
    payment_posting.process_era_file(db_session, tenant.id, _era(submitted_claim.claim_number))
    assert submitted_claim.status == 'paid'
    statuses = {e.to_status for e in claims.claim_history(db_session, tenant.id, submitted_claim.id)}
    assert {'appealed', 'paid'} <= statuses


def test_denial_remittance_is_not_posted(db_session, tenant, submitted_claim):
    text = _era(submitted_claim.claim_number, paid='0', adjustment='300', status='4')
    result = payment_posting.process_era_file(db_session, tenant.id, text)

    assert result['posted'] == 0
    assert result['pendingReview'] == 1
    record = result['records'][0]
    assert record['status'] == 'pending_review'
    assert record['autoPosted'] is False
    assert 'Payer denied claim' in record['errors']
    assert submitted_claim.status == 'denied'
    assert submitted_claim.denial_reason == 'CO-45'
    assert submitted_claim.paid_amount == 0.0

    today = utc_now().date()
    summary = payment_posting.reconcile_payments(db_session, tenant.id, today, today)
    assert summary['reconciled'] == 0
    assert submitted_claim.status == 'denied'


def test_payment_against_closed_claim_waits_for_review(db_session, tenant, submitted_claim):
    claims.transition_claim(db_session, tenant.id, submitted_claim.id, 'denied')
    claims.transition_claim(db_session, tenant.id, submitted_claim.id, 'closed')
    result = payment_posting.process_era_file(db_session, tenant.id, _era(submitted_claim.claim_number))

    assert result['duplicates'] == 0
    assert result['pendingReview'] == 1
    assert result['records'][0]['status'] == 'pending_review'
    assert 'Claim status closed cannot accept payment' in result['records'][0]['errors']


def test_rejected_transition_keeps_payment_pending(db_session, tenant, submitted_claim, monkeypatch):
    def refuse(session, tenant_id, claim_id, new_status, note=None, **kwargs):
        raise InvalidTransitionError(f'Cannot move claim from submitted to {new_status}')

    monkeypatch.setattr(claims, 'transition_claim', refuse)
    result = payment_posting.process_era_file(db_session, tenant.id, _era(submitted_claim.claim_number))

    assert result['duplicates'] == 0
    assert result['posted'] == 0
    assert result['pendingReview'] == 1
    record = result['records'][0]
    assert record['status'] == 'pending_review'
    assert 'Cannot move claim from submitted to paid' in record['errors']
    assert submitted_claim.paid_amount == 0.0
    assert submitted_claim.status == 'submitted'


def test_payment_analytics(db_session, tenant, submitted_claim):
    payment_posting.process_era_file(db_session, tenant.id, _era(submitted_claim.claim_number))
    payment_posting.process_era_file(db_session, tenant.id, _era('CLM-UNKNOWN', paid='40', adjustment=''))
    today = utc_now().date()
    stats = payment_posting.payment_analytics(db_session, tenant.id, today, today)
    assert stats['totalPayments'] == 2
    assert stats['totalAmount'] == 290.0
    assert stats['autoPostedCount'] == 1
    assert stats['autoPostingRate'] == 50.0
    assert stats['topPayers'] == [{'name': 'AETNA', 'amount': 290.0, 'count': 2}]
