import base64
import hashlib
import typing
from datetime import datetime
from datetime import timezone
from typing import Any

import httpx
from Crypto.Hash import SHA256
from Crypto.Signature import PKCS1_v1_5
from loguru import logger

from federator.key import Key
from federator.key import get_instance_key


def _build_signed_string(
    signed_headers: str,
    method: str,
    path: str,
    headers: Any,
    body_digest: str | None,
) -> str:
    out = []
    for signed_header in signed_headers.split(" "):
        if signed_header == "(request-target)":
            out.append("(request-target): " + method.lower() + " " + path)
        elif signed_header == "digest" and body_digest:
            out.append("digest: " + body_digest)
        else:
            out.append(signed_header + ": " + headers[signed_header])
    return "\n".join(out)


def _body_digest(body: bytes) -> str:
    h = hashlib.new("sha256")
    h.update(body)  # type: ignore
    return "SHA-256=" + base64.b64encode(h.digest()).decode("utf-8")


class HTTPXSigAuth(httpx.Auth):
    def __init__(self, key: Key | None = None) -> None:
        self._key = key

    @property
    def key(self) -> Key:
        # The instance key is loaded lazily as it may have to be generated
        return self._key or get_instance_key()

    def auth_flow(
        self, r: httpx.Request
    ) -> typing.Generator[httpx.Request, httpx.Response, None]:
        key = self.key
        logger.debug(f"keyid={key.key_id()}")

        bodydigest = None
        if r.content:
            bodydigest = _body_digest(r.content)

        date = datetime.now(timezone.utc).strftime("%a, %d %b %Y %H:%M:%S GMT")
        r.headers["Date"] = date
        if bodydigest:
            r.headers["Digest"] = bodydigest
            sigheaders = "(request-target) user-agent host date digest content-type"
        else:
            sigheaders = "(request-target) user-agent host date accept"

        to_be_signed = _build_signed_string(
            sigheaders, r.method, r.url.path, r.headers, bodydigest
        )
        if not key.privkey:
            raise ValueError("Should never happen")
        signer = PKCS1_v1_5.new(key.privkey)
        digest = SHA256.new()
        digest.update(to_be_signed.encode("utf-8"))
        sig = base64.b64encode(signer.sign(digest)).decode()

        key_id = key.key_id()
        sig_value = f'keyId="{key_id}",algorithm="rsa-sha256",headers="{sigheaders}",signature="{sig}"'  # noqa: E501
        logger.debug(f"signed request {sig_value=}")
        r.headers["Signature"] = sig_value
        yield r


auth = HTTPXSigAuth()
