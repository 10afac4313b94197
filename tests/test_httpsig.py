import base64
import re

import httpx
import respx
from Crypto.Hash import SHA256
from Crypto.PublicKey import RSA
from Crypto.Signature import PKCS1_v1_5

from federator import activitypub as ap
from federator import httpsig
from federator.key import Key
from tests import factories


def _parse_sig_header(sig_header: str) -> dict[str, str]:
    return dict(re.findall(r'(\w+)="([^"]*)"', sig_header))


def _verify(pubkey_pem: str, request: httpx.Request) -> bool:
    sig = _parse_sig_header(request.headers["Signature"])
    digest = request.headers.get("Digest")
    signed_string = httpsig._build_signed_string(
        sig["headers"], request.method, request.url.path, request.headers, digest
    )
    signer = PKCS1_v1_5.new(RSA.importKey(pubkey_pem))
    h = SHA256.new()
    h.update(signed_string.encode("utf-8"))
    return signer.verify(h, base64.b64decode(sig["signature"]))


async def test_post__signed_with_digest(respx_mock: respx.MockRouter) -> None:
    # Given a key
    privkey, pubkey = factories.generate_key()
    k = Key("https://federator.test/c/python")
    k.load(privkey)
    route = respx_mock.post("https://example.social/inbox").mock(
        return_value=httpx.Response(202)
    )

    # When posting an activity
    await ap.post(
        "https://example.social/inbox",
        {"id": "https://federator.test/activities/1", "type": "Create"},
        sig_auth=httpsig.HTTPXSigAuth(k),
    )

    # Then the request is signed
    request = route.calls.last.request
    sig = _parse_sig_header(request.headers["Signature"])
    assert sig["keyId"] == "https://federator.test/c/python#main-key"
    assert sig["algorithm"] == "rsa-sha256"
    assert sig["headers"] == (
        "(request-target) user-agent host date digest content-type"
    )
    assert request.headers["Digest"] == httpsig._body_digest(request.content)
    assert _verify(pubkey, request)


async def test_fetch__signed_retry_on_401(respx_mock: respx.MockRouter) -> None:
    # Given a server requiring signed fetches
    note = factories.build_note_object("https://example.social/users/alice")
    route = respx_mock.get(note["id"]).mock(
        side_effect=[
            httpx.Response(401),
            httpx.Response(200, json=note),
        ]
    )

    # When fetching an object
    fetched = await ap.fetch_object(note["id"])

    # Then the request was retried with a signature
    assert fetched == note
    assert route.call_count == 2
    assert "Signature" not in route.calls[0].request.headers
    signed_request = route.calls[1].request
    sig = _parse_sig_header(signed_request.headers["Signature"])
    assert sig["keyId"] == "https://federator.test/actor#main-key"
    assert sig["headers"] == "(request-target) user-agent host date accept"
    assert _verify(httpsig.auth.key.pubkey_pem or "", signed_request)
