import hashlib
import re
from datetime import datetime, timedelta

import pytest
from sqlmodel import Session, select

from studio_sign.errors import AlreadySigned
from studio_sign.lifecycle import ContractLifecycle
from studio_sign.models import Client, Contract, ContractEvent, ContractStatus
from studio_sign.repository import ContractRepository
from studio_sign.schemas import SignRequest
from studio_sign.signature import SignatureService
from studio_sign.utils import utcnow

from conftest import ADMIN_HEADERS, SIGNATURE_DATA_URL


def create_contract(client, jane, template, **overrides):
    payload = {
        "template_id": template["id"],
        "client_id": jane.id,
        "title": "Jane & Sam Wedding",
        "variables": {"event_date": "2025-06-15", "total_amount": "5000"},
    }
    payload.update(overrides)
    resp = client.post("/api/admin/contracts", json=payload, headers=ADMIN_HEADERS)
    assert resp.status_code == 201, resp.text
    return resp.json()["contract"]


def send(client, contract_id):
    resp = client.post(f"/api/admin/contracts/{contract_id}/send", headers=ADMIN_HEADERS)
    assert resp.status_code == 200, resp.text
    body = resp.json()
    return body, body["magicLinkUrl"].rsplit("/", 1)[1]


def open_link(client, token):
    resp = client.post(f"/api/contract/{token}/open")
    assert resp.status_code == 200, resp.text
    return resp.json()["sessionId"]


def viewed_contract(client, jane, template, **overrides):
    contract = create_contract(client, jane, template, **overrides)
    _, token = send(client, contract["id"])
    return contract, token, open_link(client, token)


def sign(client, contract_id, session_id, **overrides):
    payload = {
        "signatureDataUrl": SIGNATURE_DATA_URL,
        "signerName": "Jane Doe",
        "signerEmail": "jane@example.com",
        "agreedToTerms": True,
    }
    payload.update(overrides)
    headers = {"X-Signer-Session": session_id} if session_id else {}
    return client.post(f"/api/contracts/{contract_id}/sign", json=payload, headers=headers)


def event_types(client, contract_id):
    resp = client.get(f"/api/admin/contracts/{contract_id}/events", headers=ADMIN_HEADERS)
    assert resp.status_code == 200
    return [e["type"] for e in resp.json()["events"]]


def test_create_renders_snapshot_from_template(client, jane, wedding_template):
    contract = create_contract(client, jane, wedding_template)
    assert contract["status"] == "DRAFT"
    assert re.fullmatch(rf"CONT-{utcnow().year}-001", contract["contract_number"])
    assert "Wedding Photography Agreement" in contract["body_html"]
    assert "Client: Jane Doe (jane@example.com)" in contract["body_html"]
    assert "Event date: 2025-06-15" in contract["body_html"]
    assert "Total: 5000" in contract["body_html"]
    assert "A deposit is due on signing." in contract["body_html"]
    assert contract["contract_number"] in contract["body_html"]

    second = create_contract(client, jane, wedding_template)
    assert second["contract_number"].endswith("-002")


def test_create_reports_missing_required_fields_as_warnings(client, jane, wedding_template):
    resp = client.post(
        "/api/admin/contracts",
        json={"template_id": wedding_template["id"], "client_id": jane.id, "variables": {}},
        headers=ADMIN_HEADERS,
    )
    assert resp.status_code == 201
    warnings = resp.json()["warnings"]
    assert "Missing required field: Event date" in warnings
    assert "Missing required field: Total" in warnings


def test_create_rejects_ill_typed_variables(client, jane, wedding_template):
    resp = client.post(
        "/api/admin/contracts",
        json={"template_id": wedding_template["id"], "client_id": jane.id,
              "variables": {"event_date": "2025-06-15", "total_amount": "lots"}},
        headers=ADMIN_HEADERS,
    )
    assert resp.status_code == 422
    assert resp.json()["reason"] == "validation_error"


def test_create_with_unknown_client_or_template(client, jane, wedding_template):
    resp = client.post("/api/admin/contracts", json={"template_id": wedding_template["id"], "client_id": 999},
                       headers=ADMIN_HEADERS)
    assert resp.status_code == 404
    resp = client.post("/api/admin/contracts", json={"template_id": 999, "client_id": jane.id}, headers=ADMIN_HEADERS)
    assert resp.status_code == 404
    assert resp.json()["reason"] == "not_found"


def test_admin_routes_require_token(client):
    assert client.get("/api/admin/contracts").status_code == 401
    assert client.get("/api/admin/contracts", headers={"X-Access-Token": "nope"}).status_code == 403


def test_happy_path_sign(client, jane, wedding_template, mock_storage, sent_emails):
    contract = create_contract(client, jane, wedding_template)
    body, token = send(client, contract["id"])
    assert body["contract"]["status"] == "SENT"
    assert re.fullmatch(r"[0-9a-f]{64}", token)
    assert body["contract"]["pdf_hash"]
    invite = [m for m in sent_emails if m["to"] == "jane@example.com"]
    assert len(invite) == 1
    assert token in invite[0]["text"]

    summary = client.get(f"/api/contract/{token}")
    assert summary.status_code == 200
    assert summary.json()["contract"]["contractNumber"] == contract["contract_number"]
    assert summary.json()["requiresOtp"] is False

    session_id = open_link(client, token)
    resp = sign(client, contract["id"], session_id, signerEmail="JANE@example.com")
    assert resp.status_code == 200, resp.text
    signed = resp.json()["contract"]
    assert signed["status"] == "SIGNED"

    # stored bytes hash to the recorded digest
    assert signed["pdf_path"].startswith(f"contracts/contract_{contract['contract_number']}_signed_")
    assert signed["pdf_path"].endswith(f"{signed['pdf_hash'][:16]}.pdf")
    assert hashlib.sha256(mock_storage[signed["pdf_path"]]).hexdigest() == signed["pdf_hash"]
    assert signed["pdf_hash"] != body["contract"]["pdf_hash"]

    sent_at = datetime.fromisoformat(signed["sent_at"])
    viewed_at = datetime.fromisoformat(signed["viewed_at"])
    signed_at = datetime.fromisoformat(signed["signed_at"])
    assert sent_at <= viewed_at <= signed_at

    events = client.get(f"/api/admin/contracts/{contract['id']}/events", headers=ADMIN_HEADERS).json()
    assert [e["type"] for e in events["events"]] == ["CREATED", "PDF_RENDERED", "SENT", "VIEWED", "SIGNED"]
    assert events["chainValid"] is True
    assert events["events"][0]["prev_hash"] == "0" * 64
    assert events["events"][-1]["meta"]["signerEmail"] == "JANE@example.com"
    assert "SIGN_CONTRACT" in [a["action"] for a in events["audit"]]

    recipients = {m["to"] for m in sent_emails}
    assert "studio@example.com" in recipients

    verify = client.get(f"/api/admin/contracts/{contract['id']}/pdf/verify", headers=ADMIN_HEADERS)
    assert verify.json()["valid"] is True


def test_email_mismatch_leaves_contract_viewed(client, jane, wedding_template):
    contract, _, session_id = viewed_contract(client, jane, wedding_template)
    resp = sign(client, contract["id"], session_id, signerEmail="someone@else.com")
    assert resp.status_code == 403
    assert resp.json()["reason"] == "email_mismatch"
    current = client.get(f"/api/admin/contracts/{contract['id']}", headers=ADMIN_HEADERS).json()
    assert current["status"] == "VIEWED"
    assert "SIGNED" not in event_types(client, contract["id"])


def test_signature_validation_order(client, jane, wedding_template):
    contract, _, session_id = viewed_contract(client, jane, wedding_template)

    resp = sign(client, contract["id"], "wrong-session")
    assert resp.status_code == 401
    assert resp.json()["reason"] == "invalid_session"

    resp = sign(client, contract["id"], session_id, agreedToTerms=False, signatureDataUrl="garbage")
    assert resp.json()["reason"] == "terms_not_agreed"

    resp = sign(client, contract["id"], session_id, signatureDataUrl="data:image/gif;base64,R0lGOD")
    assert resp.status_code == 422
    assert resp.json()["reason"] == "invalid_signature_image"

    resp = sign(client, contract["id"], session_id, signatureDataUrl="data:image/png;base64,")
    assert resp.json()["reason"] == "invalid_signature_image"

    resp = sign(client, contract["id"], session_id, signerName="J")
    assert resp.status_code == 422
    assert resp.json()["reason"] == "validation_error"

    resp = sign(client, contract["id"], session_id, signerEmail="not-an-email")
    assert resp.json()["reason"] == "validation_error"


def test_sign_requires_viewed_status(client, jane, wedding_template):
    contract = create_contract(client, jane, wedding_template)
    resp = sign(client, contract["id"], "anything")
    assert resp.status_code == 409
    assert resp.json()["reason"] == "invalid_state"

    send(client, contract["id"])
    resp = sign(client, contract["id"], "anything")
    assert resp.status_code == 409

    resp = sign(client, 999, "anything")
    assert resp.status_code == 404


def test_double_sign_yields_one_signed_event(client, jane, wedding_template):
    contract, _, session_id = viewed_contract(client, jane, wedding_template)
    assert sign(client, contract["id"], session_id).status_code == 200
    again = sign(client, contract["id"], session_id)
    assert again.status_code == 409
    assert again.json()["reason"] == "already_signed"
    assert event_types(client, contract["id"]).count("SIGNED") == 1


def test_concurrent_sign_has_one_winner(client, jane, wedding_template, test_engine, mock_storage):
    contract, _, session_id = viewed_contract(client, jane, wedding_template)
    request = SignRequest(**{
        "signatureDataUrl": SIGNATURE_DATA_URL,
        "signerName": "Jane Doe",
        "signerEmail": "jane@example.com",
        "agreedToTerms": True,
    })

    with Session(test_engine) as first, Session(test_engine) as second:
        loser = SignatureService(second)

        def stamp_after_rival_signs(row, *args):
            # both sessions loaded the contract while it was still VIEWED
            assert row.status == "VIEWED"
            SignatureService(first).sign_contract(contract["id"], session_id, request)
            return SignatureService._stamp(loser, row, *args)

        loser._stamp = stamp_after_rival_signs
        with pytest.raises(AlreadySigned):
            loser.sign_contract(contract["id"], session_id, request)

    current = client.get(f"/api/admin/contracts/{contract['id']}", headers=ADMIN_HEADERS).json()
    assert current["status"] == "SIGNED"
    assert event_types(client, contract["id"]).count("SIGNED") == 1


def test_sign_when_client_record_is_gone(client, jane, wedding_template, test_engine, sent_emails):
    contract, _, session_id = viewed_contract(client, jane, wedding_template)
    with Session(test_engine) as s:
        s.delete(s.get(Client, jane.id))
        s.commit()

    resp = sign(client, contract["id"], session_id, signerName="Jane Smith", signerEmail="jane.smith@example.com")
    assert resp.status_code == 200, resp.text
    admin = [m for m in sent_emails if m["to"] == "studio@example.com"][-1]
    assert "Jane Smith" in admin["text"]


def test_decline_records_reason_and_keeps_pdf(client, jane, wedding_template, sent_emails):
    contract, _, session_id = viewed_contract(client, jane, wedding_template)
    before = client.get(f"/api/admin/contracts/{contract['id']}", headers=ADMIN_HEADERS).json()

    resp = client.post(
        f"/api/contracts/{contract['id']}/decline",
        json={"reason": "too expensive"},
        headers={"X-Signer-Session": session_id},
    )
    assert resp.status_code == 200, resp.text
    declined = resp.json()["contract"]
    assert declined["status"] == "DECLINED"
    assert declined["voided_reason"] == "too expensive"
    assert declined["pdf_hash"] == before["pdf_hash"]
    assert declined["pdf_path"] == before["pdf_path"]
    assert event_types(client, contract["id"])[-1] == "DECLINED"
    assert any(m["subject"].startswith("Contract declined") for m in sent_emails)

    again = client.post(f"/api/contracts/{contract['id']}/decline", json={}, headers={"X-Signer-Session": session_id})
    assert again.status_code == 409
    assert again.json()["reason"] == "already_declined"

    assert sign(client, contract["id"], session_id).status_code == 409


def test_decline_without_reason_uses_default(client, jane, wedding_template):
    contract, _, session_id = viewed_contract(client, jane, wedding_template)
    resp = client.post(f"/api/contracts/{contract['id']}/decline", headers={"X-Signer-Session": session_id})
    assert resp.status_code == 200
    assert resp.json()["contract"]["voided_reason"] == "Declined by client"


def test_decline_after_sign_is_already_signed(client, jane, wedding_template):
    contract, _, session_id = viewed_contract(client, jane, wedding_template)
    assert sign(client, contract["id"], session_id).status_code == 200
    resp = client.post(f"/api/contracts/{contract['id']}/decline", json={"reason": "changed my mind"},
                       headers={"X-Signer-Session": session_id})
    assert resp.status_code == 409
    assert resp.json()["reason"] == "already_signed"


def test_magic_link_token_states(client, jane, wedding_template, test_engine):
    assert client.get("/api/contract/" + "a" * 64).status_code == 404
    assert client.get("/api/contract/" + "a" * 64).json()["reason"] == "invalid_token"

    contract, token, _ = viewed_contract(client, jane, wedding_template)
    consumed = client.get(f"/api/contract/{token}")
    assert consumed.status_code == 410
    assert consumed.json()["reason"] == "token_consumed"
    assert client.post(f"/api/contract/{token}/open").status_code == 410

    other = create_contract(client, jane, wedding_template)
    _, other_token = send(client, other["id"])
    with Session(test_engine) as s:
        row = s.get(Contract, other["id"])
        row.magic_link_expires_at = utcnow() - timedelta(minutes=1)
        s.add(row)
        s.commit()
    expired = client.get(f"/api/contract/{other_token}")
    assert expired.status_code == 410
    assert expired.json()["reason"] == "token_expired"


def test_send_twice_and_void_transitions(client, jane, wedding_template):
    contract = create_contract(client, jane, wedding_template)
    send(client, contract["id"])
    resp = client.post(f"/api/admin/contracts/{contract['id']}/send", headers=ADMIN_HEADERS)
    assert resp.status_code == 409
    assert resp.json()["reason"] == "invalid_state"

    voided = client.post(f"/api/admin/contracts/{contract['id']}/void", json={"reason": "date cancelled"},
                         headers=ADMIN_HEADERS)
    assert voided.status_code == 200
    assert voided.json()["status"] == "VOIDED"
    assert voided.json()["voided_reason"] == "date cancelled"

    again = client.post(f"/api/admin/contracts/{contract['id']}/void", headers=ADMIN_HEADERS)
    assert again.status_code == 409
    assert event_types(client, contract["id"])[-1] == "VOIDED"


def test_resend_revokes_previous_link(client, jane, wedding_template, sent_emails):
    contract, old_token, _ = viewed_contract(client, jane, wedding_template)
    resp = client.post(f"/api/admin/contracts/{contract['id']}/resend", headers=ADMIN_HEADERS)
    assert resp.status_code == 200
    new_token = resp.json()["magicLinkUrl"].rsplit("/", 1)[1]
    assert new_token != old_token
    assert resp.json()["contract"]["status"] == "VIEWED"

    assert client.get(f"/api/contract/{old_token}").status_code == 404
    session_id = open_link(client, new_token)
    assert sign(client, contract["id"], session_id).status_code == 200
    types = event_types(client, contract["id"])
    assert "REISSUED" in types
    assert types.count("VIEWED") == 2

    draft = create_contract(client, jane, wedding_template)
    assert client.post(f"/api/admin/contracts/{draft['id']}/resend", headers=ADMIN_HEADERS).status_code == 409


def test_otp_flow(client, jane, wedding_template, sent_emails):
    contract = create_contract(client, jane, wedding_template, require_otp=True)
    _, token = send(client, contract["id"])

    summary = client.get(f"/api/contract/{token}").json()
    assert summary["requiresOtp"] is True
    direct = client.post(f"/api/contract/{token}/open")
    assert direct.status_code == 403

    wrong = client.post(f"/api/contract/{token}/otp", json={"email": "intruder@example.com"})
    assert wrong.status_code == 403
    assert wrong.json()["reason"] == "email_mismatch"

    resp = client.post(f"/api/contract/{token}/otp", json={"email": "Jane@Example.com"})
    assert resp.status_code == 200
    code = re.search(r"verification code is (\d{6})", sent_emails[-1]["text"]).group(1)

    bad = client.post(f"/api/contract/{token}/otp/verify", json={"code": "000000" if code != "000000" else "111111"})
    assert bad.status_code == 403

    ok = client.post(f"/api/contract/{token}/otp/verify", json={"code": code})
    assert ok.status_code == 200, ok.text
    session_id = ok.json()["sessionId"]
    assert sign(client, contract["id"], session_id).status_code == 200
    types = event_types(client, contract["id"])
    assert types[-4:] == ["OTP_FAILED", "OTP_VERIFIED", "VIEWED", "SIGNED"]


def test_otp_attempts_exhausted_revokes_link(client, jane, wedding_template, sent_emails):
    contract = create_contract(client, jane, wedding_template, require_otp=True)
    _, token = send(client, contract["id"])
    client.post(f"/api/contract/{token}/otp", json={"email": "jane@example.com"})
    code = re.search(r"verification code is (\d{6})", sent_emails[-1]["text"]).group(1)
    wrong = "000000" if code != "000000" else "111111"

    for _ in range(4):
        assert client.post(f"/api/contract/{token}/otp/verify", json={"code": wrong}).status_code == 403
    last = client.post(f"/api/contract/{token}/otp/verify", json={"code": wrong})
    assert last.status_code == 410
    assert last.json()["reason"] == "token_consumed"

    assert client.post(f"/api/contract/{token}/otp/verify", json={"code": code}).status_code == 410


def test_wrong_code_that_loses_the_update_records_nothing(client, jane, wedding_template, sent_emails, monkeypatch):
    contract = create_contract(client, jane, wedding_template, require_otp=True)
    _, token = send(client, contract["id"])
    client.post(f"/api/contract/{token}/otp", json={"email": "jane@example.com"})
    code = re.search(r"verification code is (\d{6})", sent_emails[-1]["text"]).group(1)

    update_if = ContractRepository.update_if

    def lose_attempt_counter(self, contract_id, allowed_from, extra_where=(), **values):
        if "otp_attempts" in values:
            return False
        return update_if(self, contract_id, allowed_from, extra_where=extra_where, **values)

    monkeypatch.setattr(ContractRepository, "update_if", lose_attempt_counter)
    bad = client.post(f"/api/contract/{token}/otp/verify", json={"code": "000000" if code != "000000" else "111111"})
    assert bad.status_code == 403
    assert "OTP_FAILED" not in event_types(client, contract["id"])


def test_pdf_verify_detects_tampering(client, jane, wedding_template, mock_storage):
    contract = create_contract(client, jane, wedding_template)
    body, _ = send(client, contract["id"])
    path = body["contract"]["pdf_path"]
    mock_storage[path] = mock_storage[path] + b"%tampered"
    verify = client.get(f"/api/admin/contracts/{contract['id']}/pdf/verify", headers=ADMIN_HEADERS).json()
    assert verify["valid"] is False
    assert verify["expectedHash"] == body["contract"]["pdf_hash"]


def test_render_pdf_for_draft(client, jane, wedding_template, mock_storage):
    contract = create_contract(client, jane, wedding_template)
    resp = client.post(f"/api/admin/contracts/{contract['id']}/pdf", headers=ADMIN_HEADERS)
    assert resp.status_code == 200
    info = resp.json()
    assert hashlib.sha256(mock_storage[info["pdfPath"]]).hexdigest() == info["pdfHash"]

    body, _ = send(client, contract["id"])
    # already rendered, so send keeps it
    assert body["contract"]["pdf_hash"] == info["pdfHash"]
    assert event_types(client, contract["id"]).count("PDF_RENDERED") == 1


def test_events_chain_detects_edits(client, jane, wedding_template, test_engine):
    contract, _, _ = viewed_contract(client, jane, wedding_template)
    with Session(test_engine) as s:
        ev = s.exec(select(ContractEvent).where(ContractEvent.contract_id == contract["id"],
                                                ContractEvent.type == "SENT")).first()
        ev.meta_json = '{"to":"someone@else.com"}'
        s.add(ev)
        s.commit()
    events = client.get(f"/api/admin/contracts/{contract['id']}/events", headers=ADMIN_HEADERS).json()
    assert events["chainValid"] is False


def test_expire_due_sweep(client, jane, wedding_template, test_engine):
    sent = create_contract(client, jane, wedding_template)
    send(client, sent["id"])
    draft = create_contract(client, jane, wedding_template)
    overdue_draft = create_contract(client, jane, wedding_template,
                                    sign_by_at=(utcnow() - timedelta(days=1)).isoformat())

    with Session(test_engine) as s:
        expired = ContractLifecycle(s).expire_due(now=utcnow() + timedelta(hours=73))
    assert sorted(expired) == sorted([sent["id"], overdue_draft["id"]])

    for contract_id, status in ((sent["id"], "EXPIRED"), (draft["id"], "DRAFT"), (overdue_draft["id"], "EXPIRED")):
        assert client.get(f"/api/admin/contracts/{contract_id}", headers=ADMIN_HEADERS).json()["status"] == status
    assert event_types(client, sent["id"])[-1] == "EXPIRED"


def test_expiry_reminders_sent_once(client, jane, wedding_template, test_engine, sent_emails):
    contract = create_contract(client, jane, wedding_template)
    send(client, contract["id"])
    with Session(test_engine) as s:
        lifecycle = ContractLifecycle(s)
        assert lifecycle.send_expiry_reminders(now=utcnow()) == []
        assert lifecycle.send_expiry_reminders(now=utcnow() + timedelta(hours=60)) == [contract["id"]]
        assert lifecycle.send_expiry_reminders(now=utcnow() + timedelta(hours=61)) == []
    reminders = [m for m in sent_emails if m["subject"].startswith("Reminder:")]
    assert len(reminders) == 1
    assert reminders[0]["to"] == "jane@example.com"


def test_conditional_transition_leaves_state_untouched(client, jane, wedding_template, test_engine):
    contract = create_contract(client, jane, wedding_template)
    with Session(test_engine) as s:
        repo = ContractRepository(s)
        ok = repo.transition(contract["id"], [ContractStatus.VIEWED], ContractStatus.SIGNED, signed_at=utcnow())
        assert ok is False
        s.rollback()
        row = repo.get_contract(contract["id"])
        assert row.status == "DRAFT"
        assert row.signed_at is None


def test_notification_failure_does_not_undo_send(client, jane, wedding_template, monkeypatch):
    from studio_sign import email as email_module

    def broken_send_email(*args, **kwargs):
        raise ConnectionError("smtp down")

    monkeypatch.setattr(email_module, "send_email", broken_send_email)
    contract = create_contract(client, jane, wedding_template)
    body, _ = send(client, contract["id"])
    assert body["contract"]["status"] == "SENT"


def test_stamping_failure_aborts_sign(client, jane, wedding_template, monkeypatch):
    from studio_sign import storage as storage_module

    contract, _, session_id = viewed_contract(client, jane, wedding_template)

    def broken_put_bytes(*args, **kwargs):
        raise OSError("bucket unavailable")

    monkeypatch.setattr(storage_module, "put_bytes", broken_put_bytes)
    resp = sign(client, contract["id"], session_id)
    assert resp.status_code == 502
    assert resp.json()["reason"] == "integration_failure"
    current = client.get(f"/api/admin/contracts/{contract['id']}", headers=ADMIN_HEADERS).json()
    assert current["status"] == "VIEWED"
