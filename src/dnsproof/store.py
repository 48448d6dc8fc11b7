"""Persistent account key and authorization store."""

from collections.abc import Callable

from pydantic import ValidationError

from dnsproof._logging import get_logger
from dnsproof.crypto import (
    PrivateKey,
    PublicKey,
    generate_ecdsa_key,
    load_private_key_pem,
    private_key_to_pem,
)
from dnsproof.exceptions import KeyMaterialError, NotFoundError, StoreError
from dnsproof.filer import Filer
from dnsproof.models import Authorization, StoredAccount, normalize_domain

logger = get_logger(__name__)

KEY_PREFIX = "dnsproof-data/v1"


class Store:
    """Account key and saved authorizations for one account email.

    The store is the only component that writes account key material.
    Use :meth:`init` rather than the constructor.

    Args:
        email: Account owner email.
        filer: Backing blob storage.
        account: The loaded or freshly created account record.
        key: The account private key parsed from ``account``.
    """

    def __init__(self, email: str, filer: Filer, account: StoredAccount, key: PrivateKey):
        self.email = email
        self.filer = filer
        self._account = account
        self._key = key

    @classmethod
    def init(
        cls,
        email: str,
        filer: Filer,
        key_factory: Callable[[], PrivateKey] = generate_ecdsa_key,
    ) -> "Store":
        """Load the account for ``email``, creating and persisting a key if absent.

        Raises:
            StoreError: If the filer fails with anything but not-found, or the
                stored account record is corrupt.
        """
        if not email:
            raise StoreError("account email is required")

        key_name = cls.account_key_name(email)
        try:
            raw = filer.get(key_name)
        except NotFoundError:
            key = key_factory()
            account = StoredAccount(email=email, private_key_pem=private_key_to_pem(key))
            filer.put(key_name, account.model_dump_json().encode("utf-8"))
            logger.info("Generated new account key", extra={"email": email, "key": key_name})
            return cls(email, filer, account, key)

        try:
            account = StoredAccount.model_validate_json(raw)
            key = load_private_key_pem(account.private_key_pem)
        except (ValidationError, KeyMaterialError) as e:
            raise StoreError(f"corrupt account record at {key_name}: {e}") from e

        logger.info("Loaded existing account key", extra={"email": email, "key": key_name})
        return cls(email, filer, account, key)

    @staticmethod
    def account_key_name(email: str) -> str:
        return f"{KEY_PREFIX}/{email}/account.json"

    def authorization_key_name(self, domain: str) -> str:
        return f"{KEY_PREFIX}/{self.email}/domain/{domain}/authz.json"

    @property
    def account_key(self) -> PrivateKey:
        """Private key used to sign protocol requests."""
        return self._key

    @property
    def account_url(self) -> str | None:
        return self._account.account_url

    def load_public_key(self) -> PublicKey:
        """Return the account public key."""
        return self._key.public_key()

    def save_account_url(self, url: str) -> None:
        """Persist the account URL returned by registration.

        No-op when the URL is already recorded.
        """
        if self._account.account_url == url:
            return
        account = self._account.model_copy(update={"account_url": url})
        self.filer.put(
            self.account_key_name(self.email), account.model_dump_json().encode("utf-8")
        )
        self._account = account

    def save_authorization(self, authorization: Authorization) -> None:
        """Persist ``authorization`` under its identifier.

        Records for other identifiers are never touched. A wildcard
        authorization carries the base name plus ``wildcard=true`` and is
        kept under ``*.<name>``.

        Raises:
            StoreError: If the backend write fails.
        """
        domain = authorization.identifier.value
        if authorization.wildcard:
            domain = f"*.{domain}"
        key_name = self.authorization_key_name(domain)
        data = authorization.model_dump_json().encode("utf-8")
        self.filer.put(key_name, data)
        logger.info(
            "Saved authorization",
            extra={
                "domain": domain,
                "status": str(authorization.status),
                "key": key_name,
            },
        )

    def load_authorization(self, domain: str) -> Authorization | None:
        """Read the saved authorization for ``domain``, or None if there is none.

        Raises:
            StoreError: If the record cannot be read or parsed.
        """
        key_name = self.authorization_key_name(normalize_domain(domain))
        try:
            raw = self.filer.get(key_name)
        except NotFoundError:
            return None
        try:
            return Authorization.model_validate_json(raw)
        except ValidationError as e:
            raise StoreError(f"corrupt authorization record at {key_name}: {e}") from e
