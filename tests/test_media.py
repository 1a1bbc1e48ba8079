import pytest
from sanctuary_engine.errors import Forbidden
from sanctuary_engine.media import MediaTokenIssuer, room_channel, session_channel


class Ticker:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_allocate_and_verify():
    issuer = MediaTokenIssuer("secret", ttl_seconds=60, clock=Ticker())
    grant = issuer.allocate("sanctuary-s1", "p-1")
    assert grant.channel_name == "sanctuary-s1"
    assert grant.expires_at == 1_700_000_060
    assert issuer.verify(grant.join_token) == ("sanctuary-s1", "p-1")


def test_room_channels_are_distinct_from_session_channel():
    assert session_channel("sanctuary", "s1") == "sanctuary-s1"
    assert room_channel("sanctuary", "s1", "r1") != session_channel("sanctuary", "s1")


def test_revoked_token_is_rejected():
    issuer = MediaTokenIssuer("secret")
    token = issuer.allocate("c", "p-1").join_token
    issuer.revoke(token)
    issuer.revoke(None)
    with pytest.raises(Forbidden):
        issuer.verify(token)


def test_expired_token_is_rejected():
    clock = Ticker()
    issuer = MediaTokenIssuer("secret", ttl_seconds=60, clock=clock)
    token = issuer.allocate("c", "p-1").join_token
    clock.now += 60
    assert issuer.verify(token) == ("c", "p-1")
    clock.now += 1
    with pytest.raises(Forbidden):
        issuer.verify(token)


@pytest.mark.parametrize("mangle", [
    lambda t: t.replace(":p-1:", ":p-2:"),
    lambda t: t[:-1] + ("1" if t.endswith("0") else "0"),
    lambda t: "garbage",
])
def test_tampered_token_is_rejected(mangle):
    issuer = MediaTokenIssuer("secret")
    token = issuer.allocate("c", "p-1").join_token
    with pytest.raises(Forbidden):
        issuer.verify(mangle(token))


def test_other_secret_does_not_verify():
    token = MediaTokenIssuer("one").allocate("c", "p-1").join_token
    with pytest.raises(Forbidden):
        MediaTokenIssuer("two").verify(token)
