"""
auth/linker.py -- Reconcile a verified external identity with an internal user.

AccountLinker.resolve() decides, in one transaction:
  1. Identity already linked        -> refresh profile fields, return its user.
  2. Caller is already signed in    -> link the identity to that user
                                       (Conflict if they already have an
                                       account at this provider).
  3. Email owned by an existing user -> AmbiguousAccount (or auto-link when the
                                        deployment opted in and the provider
                                        verified the email).
  4. Otherwise                       -> create a user and its first link.

Race handling: the oauth_accounts unique index decides who wins. A prior
existence check alone is never trusted; IntegrityError on insert is the
signal. In step 2 the loser gets Conflict. In step 4 the loser's transaction
(including the user row it created) is rolled back and resolution runs once
more, which finds the winner's link and returns the same user.

Synchronous: the coordinator runs it in a worker thread.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

import logging

from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from auth.errors import AmbiguousAccount, Conflict, NotFound
from auth.models import AccountLink, ExternalIdentity, Provider, User
from auth.store import UserStore

logger = logging.getLogger("oauthgate.auth.linker")


class AccountLinker:
    def __init__(self, store: UserStore, auto_link_verified_email: bool = False) -> None:
        self.store = store
        self.auto_link_verified_email = auto_link_verified_email

    def resolve(
        self,
        identity: ExternalIdentity,
        provider: Provider,
        linking_user_id: int | None = None,
    ) -> tuple[User, bool]:
        """Return (user, linked) for a verified identity.

        linked is True when this call attached the identity to a user that
        already existed (explicit linking or verified-email auto-link).

        Raises Conflict, AmbiguousAccount, or NotFound (linking user vanished).
        """
        provider = Provider(provider)
        try:
            with self.store.transaction() as conn:
                return self._resolve(conn, identity, provider, linking_user_id)
        except IntegrityError:
            if linking_user_id is not None:
                logger.warning(
                    "Link race lost: %s/%s claimed concurrently (linking user %s)",
                    provider.value,
                    identity.provider_user_id,
                    linking_user_id,
                )
                raise Conflict("Identity or provider slot was linked concurrently") from None

        # Lost the first-login race: the winner's transaction has committed, so
        # the link is now visible and step 1 returns the winner's user.
        logger.info("First-login race on %s/%s, re-resolving", provider.value, identity.provider_user_id)
        try:
            with self.store.transaction() as conn:
                return self._resolve(conn, identity, provider, None)
        except IntegrityError:
            raise Conflict("Identity could not be reconciled after a concurrent insert") from None

    def _resolve(
        self,
        conn: Connection,
        identity: ExternalIdentity,
        provider: Provider,
        linking_user_id: int | None,
    ) -> tuple[User, bool]:
        # Step 1: returning identity
        link = self.store.find_link(provider, identity.provider_user_id, conn=conn)
        if link is not None:
            if linking_user_id is not None and link.user_id != linking_user_id:
                raise Conflict(
                    f"{provider.value}/{identity.provider_user_id} is linked to user {link.user_id}, "
                    f"not to linking user {linking_user_id}"
                )
            self.store.refresh_link(link.id, identity, conn=conn)
            user = self.store.find_by_id(link.user_id, conn=conn)
            if user is None:
                # FK + cascade make this unreachable unless the schema was tampered with.
                raise NotFound(f"Link {link.id} references missing user {link.user_id}")
            return user, False

        # Step 2: signed-in user attaching a new provider
        if linking_user_id is not None:
            user = self.store.find_by_id(linking_user_id, conn=conn)
            if user is None:
                raise NotFound(f"Linking user {linking_user_id} does not exist")
            self._create_link(conn, user.id, provider, identity)
            logger.info("Linked %s account to user %s", provider.value, user.id)
            return user, True

        # Step 3: email already owned by someone
        existing = self.store.find_by_email(identity.email, conn=conn) if identity.email else None
        if existing is not None:
            if self.auto_link_verified_email and identity.email_verified:
                self._create_link(conn, existing.id, provider, identity)
                logger.info("Auto-linked %s account to user %s by verified email", provider.value, existing.id)
                return existing, True
            raise AmbiguousAccount(
                f"{provider.value} identity email matches existing user {existing.id}; explicit linking required"
            )

        # Step 4: brand new user
        user_id = self.store.create_user(User(email=identity.email, display_name=identity.display_name), conn=conn)
        self._create_link(conn, user_id, provider, identity)
        logger.info("Created user %s from %s login", user_id, provider.value)
        return self.store.find_by_id(user_id, conn=conn), False

    def _create_link(self, conn: Connection, user_id: int, provider: Provider, identity: ExternalIdentity) -> int:
        # At most one account per provider per user.
        if self.store.find_user_link(user_id, provider, conn=conn) is not None:
            raise Conflict(f"User {user_id} already has a {provider.value} account linked")
        return self.store.create_link(
            AccountLink(
                user_id=user_id,
                provider=provider,
                provider_user_id=identity.provider_user_id,
                email=identity.email,
                display_name=identity.display_name,
                avatar_url=identity.avatar_url,
            ),
            conn=conn,
        )
