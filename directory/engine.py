"""
directory/engine.py -- The user-management grid's query and administration engine.

DirectoryQueryEngine answers page requests (list), maps accounts to stable row
keys and back (row_identity / resolve_row), and performs the administrative
mutations the grid offers. Every mutation takes the acting Session explicitly
and refuses to target the actor's own account: that rule lives here, not in
the routes, so no caller can forget it.

Storage errors propagate unchanged. Validation errors are raised before the
store is touched.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from auth.exceptions import RegistrationError
from auth.models import ADMIN_ROLE, Account, Session
from auth.passwords import PasswordCodec
from auth.registration import is_valid_email, set_password
from auth.store import CredentialStore
from directory.exceptions import SelfActionError
from directory.models import ListingQuery, ListingResult
from directory.query import build_predicate, validate_query

logger = logging.getLogger("adminconsole.directory")

DEFAULT_MAX_PAGE_SIZE = 500


def _parse_key(key: str | int | None) -> int | None:
    if isinstance(key, bool):
        return None
    if isinstance(key, int):
        return key
    try:
        return int(str(key).strip())
    except (TypeError, ValueError):
        return None


class DirectoryQueryEngine:
    """Bounded listing queries plus self-protected account administration.

    Usage:
        engine = DirectoryQueryEngine(store, codec)
        page = engine.list(ListingQuery(page_size=10, sort=SortSpec("handle")))
        engine.delete(actor_session, engine.row_identity(page.rows[0]))
    """

    def __init__(
        self,
        store: CredentialStore,
        codec: PasswordCodec | None = None,
        max_page_size: int = DEFAULT_MAX_PAGE_SIZE,
    ) -> None:
        self.store = store
        self.codec = codec
        self.max_page_size = max_page_size

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def list(self, query: ListingQuery) -> ListingResult:
        """Return one page and the total count for query.

        Raises QueryValidationError before any store access if the query
        names an unknown column or has a bad offset / page size. Page size is
        clamped to max_page_size. The page and the count are computed from
        the same predicate value.
        """
        query = validate_query(query, self.max_page_size)
        predicate = build_predicate(query.filters, query.search)
        sort = (query.sort.column, query.sort.direction) if query.sort else None
        rows = self.store.query_page(predicate, sort, query.offset, query.page_size)
        total = self.store.count_matching(predicate)
        return ListingResult(rows=rows, total=total, offset=query.offset, page_size=query.page_size)

    @staticmethod
    def row_identity(account: Account) -> str:
        return str(account.id)

    def resolve_row(self, key: str | None) -> Account | None:
        """Inverse of row_identity. None for malformed or unknown keys."""
        account_id = _parse_key(key)
        if account_id is None:
            return None
        return self.store.get_by_id(account_id)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    @staticmethod
    def _guard_self(actor: Session, account_id: int, action: str) -> None:
        if account_id == actor.account_id:
            raise SelfActionError(f"You cannot {action} your own account.")

    def delete(self, actor: Session, key: str) -> bool:
        """Delete the account behind key. False if the key resolves to nothing.

        Raises SelfActionError if key is the actor's own account, whether or
        not that account still exists.
        """
        account_id = _parse_key(key)
        if account_id is None:
            return False
        self._guard_self(actor, account_id, "delete")
        deleted = self.store.delete(account_id)
        if deleted:
            logger.info("%s deleted account id=%d", actor.handle, account_id)
        return deleted

    def bulk_delete(self, actor: Session, keys: Iterable[str]) -> int:
        """Delete every account in keys; returns how many were removed.

        All keys are checked first: if any is the actor's own account nothing
        is deleted. Malformed keys are skipped.
        """
        account_ids = []
        for key in keys:
            account_id = _parse_key(key)
            if account_id is not None and account_id not in account_ids:
                account_ids.append(account_id)
        for account_id in account_ids:
            self._guard_self(actor, account_id, "delete")
        deleted = sum(1 for account_id in account_ids if self.store.delete(account_id))
        logger.info("%s bulk-deleted %d account(s)", actor.handle, deleted)
        return deleted

    def set_active(self, actor: Session, key: str, active: bool) -> Account | None:
        return self.update_account(actor, key, active=active)

    def unlock(self, actor: Session, key: str) -> bool:
        """Clear a lockout and the failed-attempt counter."""
        account_id = _parse_key(key)
        if account_id is None:
            return False
        unlocked = self.store.unlock(account_id)
        if unlocked:
            logger.info("%s unlocked account id=%d", actor.handle, account_id)
        return unlocked

    def lock(self, actor: Session, key: str) -> bool:
        """Administrative lock, cleared only by unlock()."""
        account_id = _parse_key(key)
        if account_id is None:
            return False
        self._guard_self(actor, account_id, "lock")
        return self.store.lock(account_id)

    def update_account(
        self,
        actor: Session,
        key: str,
        *,
        email: str | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
        active: bool | None = None,
        roles: Iterable[str] | None = None,
        password: str | None = None,
    ) -> Account | None:
        """Apply an administrator's edits to one account and save it.

        Returns the saved Account, or None if key resolves to nothing.
        Deactivating yourself or dropping your own admin role raises
        SelfActionError. A bad email or weak password raises
        RegistrationError. StaleAccountError / AccountConflictError from the
        store propagate.
        """
        account = self.resolve_row(key)
        if account is None:
            return None
        new_roles = set(roles) if roles is not None else None
        if account.id == actor.account_id:
            if active is False:
                raise SelfActionError("You cannot deactivate your own account.")
            if new_roles is not None and account.is_admin and ADMIN_ROLE not in new_roles:
                raise SelfActionError("You cannot remove your own admin role.")

        if email is not None:
            if not is_valid_email(email):
                raise RegistrationError("Invalid email address")
            account.email = email.strip()
        if first_name is not None:
            account.first_name = first_name.strip()
        if last_name is not None:
            account.last_name = last_name.strip()
        if active is not None:
            account.active = active
        if new_roles is not None:
            for role in account.roles - new_roles:
                account.remove_role(role)
            for role in new_roles:
                account.add_role(role)
        if password is not None:
            if self.codec is None:
                raise RuntimeError("DirectoryQueryEngine needs a PasswordCodec to change passwords.")
            set_password(self.codec, account, password)

        self.store.save(account)
        logger.info("%s updated account %s", actor.handle, account.handle)
        return account
