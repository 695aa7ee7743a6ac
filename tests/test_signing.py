from eventq import signing


def test_sign_is_deterministic_hex():
    sig = signing.sign('{"type":"ticket"}', "secret")
    assert sig == signing.sign('{"type":"ticket"}', "secret")
    assert len(sig) == 64
    int(sig, 16)


def test_verify_accepts_own_signature():
    payload = '{"type":"event","eventId":"e1"}'
    assert signing.verify(payload, signing.sign(payload, "k"), "k")


def test_verify_rejects_other_key_and_tampering():
    payload = '{"type":"event","eventId":"e1"}'
    sig = signing.sign(payload, "k")
    assert not signing.verify(payload, sig, "other")
    assert not signing.verify(payload.replace("e1", "e2"), sig, "k")
    assert not signing.verify(payload, sig[:-1] + ("0" if sig[-1] != "0" else "1"), "k")


def test_verify_never_raises_on_junk():
    assert not signing.verify("p", None, "k")
    assert not signing.verify("p", 12345, "k")
    assert not signing.verify(None, "abc", "k")
    assert not signing.verify("p", "", "k")
    assert not signing.verify("p", "\udcff", "k")


def test_every_single_bit_flip_of_the_signature_fails():
    payload = '{"type":"ticket","userId":"u1","eventId":"e1"}'
    sig = signing.sign(payload, "k")
    raw = bytes.fromhex(sig)
    for i in range(len(raw) * 8):
        flipped = bytearray(raw)
        flipped[i // 8] ^= 1 << (i % 8)
        assert not signing.verify(payload, bytes(flipped).hex(), "k"), i
