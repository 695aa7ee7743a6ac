import json
from datetime import timedelta

from PIL import Image

from eventq import signing
from eventq.qr import BAD_SIGNATURE, EXPIRED, MALFORMED, QRCodec

from conftest import NOW, FakeClock


def make_codec(clock=None):
    return QRCodec(key="test-key", clock=clock or FakeClock())


def test_ticket_roundtrip_through_scanned_content():
    codec = make_codec()
    signed = codec.build_ticket_qr("u1", "e1", "Ada Lovelace", "ada@example.com", "PyCon", NOW)

    result = codec.verify_scanned(signed.content())

    assert result.valid
    assert result.error is None
    assert result.data["type"] == "ticket"
    assert result.data["userId"] == "u1"
    assert result.data["eventDate"] == "2026-03-11T10:07:00.000000Z"
    assert result.data["timestamp"] == int(NOW.timestamp() * 1000)


def test_event_and_certificate_codes():
    codec = make_codec()
    event = codec.build_event_qr("e1", "PyCon", NOW, "Hall A")
    cert = codec.build_certificate_qr("c1", "CERT-2026-000001", "http://x/verify/abc")
    assert codec.verify_signed(event.payload, event.signature).data["venue"] == "Hall A"
    assert codec.verify_signed(cert.payload, cert.signature).data["certificateNumber"] == "CERT-2026-000001"


def test_tampered_payload_is_bad_signature():
    codec = make_codec()
    signed = codec.build_ticket_qr("u1", "e1", "Ada", "ada@example.com", "PyCon", NOW)
    forged = signed.payload.replace('"u1"', '"u2"')

    result = codec.verify_signed(forged, signed.signature)

    assert not result.valid
    assert result.error == BAD_SIGNATURE
    assert "tampering" in result.message
    assert result.data is None


def test_signature_from_other_key_is_rejected():
    signed = QRCodec(key="other-key", clock=FakeClock()).build_event_qr("e1", "PyCon", NOW, "Hall A")
    assert make_codec().verify_signed(signed.payload, signed.signature).error == BAD_SIGNATURE


def test_expired_code_reports_data():
    clock = FakeClock()
    codec = make_codec(clock)
    signed = codec.build_event_qr("e1", "PyCon", NOW, "Hall A")

    clock.advance(hours=24, seconds=1)
    result = codec.verify_signed(signed.payload, signed.signature)

    assert not result.valid
    assert result.error == EXPIRED
    assert result.data["eventId"] == "e1"


def test_code_is_valid_until_max_age():
    clock = FakeClock()
    codec = make_codec(clock)
    signed = codec.build_event_qr("e1", "PyCon", NOW, "Hall A")
    clock.advance(hours=24)
    assert codec.verify_signed(signed.payload, signed.signature).valid


def test_malformed_inputs():
    codec = make_codec()
    for content in ("not json", b"\xff\xfe", "[1, 2]", json.dumps({"payload": "x"}), None, 42):
        result = codec.verify_scanned(content)
        assert not result.valid
        assert result.error == MALFORMED


def test_correctly_signed_but_invalid_envelope_is_malformed():
    codec = make_codec()
    for envelope in ('{"type":"ticket"}', '{"type":"coupon","timestamp":1}', '"just a string"',
                     '{"type":"ticket","timestamp":true}'):
        result = codec.verify_signed(envelope, signing.sign(envelope, "test-key"))
        assert result.error == MALFORMED


def test_to_dict_shape():
    codec = make_codec()
    assert codec.verify_scanned("nope").to_dict() == {
        "valid": False,
        "error": "malformed",
        "message": "Invalid QR code format",
    }


def test_images(tmp_path):
    codec = make_codec()
    signed = codec.build_event_qr("e1", "PyCon", NOW, "Hall A")

    img = codec.make_image(signed, width=240)
    assert isinstance(img, Image.Image)
    assert img.size == (240, 240)

    assert codec.encode_image(signed).startswith("data:image/png;base64,")
    assert codec.encode_image(signed, as_data_url=False)[:8] == b"\x89PNG\r\n\x1a\n"

    path = codec.save_image(signed, str(tmp_path / "event.png"))
    assert Image.open(path).size == (300, 300)


def test_max_age_is_configurable():
    clock = FakeClock()
    codec = QRCodec(key="test-key", max_age=timedelta(minutes=5), clock=clock)
    signed = codec.build_event_qr("e1", "PyCon", NOW, "Hall A")
    clock.advance(minutes=6)
    assert codec.verify_signed(signed.payload, signed.signature).error == EXPIRED
