from Crypto.PublicKey import RSA
from loguru import logger

from federator import models
from federator.config import INSTANCE_ACTOR_ID
from federator.config import KEY_PATH
from federator.database import AsyncSession


def key_exists() -> bool:
    return KEY_PATH.exists()


def generate_key() -> None:
    if key_exists():
        raise ValueError(f"Key at {KEY_PATH} already exists")
    k = RSA.generate(2048)
    privkey_pem = k.exportKey("PEM").decode("utf-8")
    KEY_PATH.parent.mkdir(parents=True, exist_ok=True)
    KEY_PATH.write_text(privkey_pem)


class Key(object):
    DEFAULT_KEY_SIZE = 2048

    def __init__(self, owner: str, id_: str | None = None) -> None:
        self.owner = owner
        self.privkey_pem: str | None = None
        self.pubkey_pem: str | None = None
        self.privkey: RSA.RsaKey | None = None
        self.id_ = id_

    def load(self, privkey_pem: str) -> None:
        self.privkey_pem = privkey_pem
        self.privkey = RSA.importKey(self.privkey_pem)
        self.pubkey_pem = self.privkey.publickey().exportKey("PEM").decode("utf-8")

    def new(self) -> None:
        k = RSA.generate(self.DEFAULT_KEY_SIZE)
        self.privkey_pem = k.exportKey("PEM").decode("utf-8")
        self.pubkey_pem = k.publickey().exportKey("PEM").decode("utf-8")
        self.privkey = k

    def key_id(self) -> str:
        return self.id_ or f"{self.owner}#main-key"


_INSTANCE_KEY: Key | None = None


def get_instance_key() -> Key:
    """Key of the instance actor, created on first use."""
    global _INSTANCE_KEY
    if _INSTANCE_KEY is None:
        if not key_exists():
            logger.info(f"Generating the instance key at {KEY_PATH}")
            generate_key()
        k = Key(INSTANCE_ACTOR_ID)
        k.load(KEY_PATH.read_text())
        _INSTANCE_KEY = k

    return _INSTANCE_KEY


def get_actor_key(actor: models.Actor) -> Key | None:
    if not actor.private_key:
        return None

    k = Key(actor.uri)
    k.load(actor.private_key)
    return k


async def ensure_actor_has_keys(
    db_session: AsyncSession,
    actor: models.Actor,
) -> models.Actor:
    """Make sure a local actor can sign its activities."""
    if actor.private_key and actor.public_key:
        return actor

    k = Key(actor.uri)
    k.new()
    actor.private_key = k.privkey_pem
    actor.public_key = k.pubkey_pem
    await db_session.commit()
    logger.info(f"Generated a keypair for {actor.uri}")
    return actor
