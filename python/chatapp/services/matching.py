"""Contact matching engine.

Matches a device address book against the user directory as a staged
pipeline carried in a per-request MatchRequest:

    SCAN_INDEX -> SCAN_DIRECTORY -> MERGE -> DONE
                                          -> TIMEOUT (wait bound exceeded)

- SCAN_INDEX: for every contact, look up each candidate format in the phone
  index (fast path).
- SCAN_DIRECTORY: only when the index produced no matches at all (or could
  not be read). Full scan comparing each contact's candidates with the
  normalized directory phone and with the directory entry's own candidates.
- MERGE: union of both stages, de-duplicated by resolved user id.

The caller waits at most CONTACT_MATCH_TIMEOUT_S; on expiry it receives
whatever has been merged so far (possibly empty). Matching never raises to
the caller: lookup failures degrade to fewer results.
"""

import contextvars
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from enum import Enum
from uuid import uuid4

from chatapp.config import get_settings
from chatapp.logging import get_logger, set_operation_id
from chatapp.schemas.contact import DeviceContact, MatchedContact
from chatapp.schemas.identity import UserIdentity
from chatapp.services.phone import (
    candidate_formats,
    dedupe_device_contacts,
    formats_overlap,
    is_same_number,
    normalize,
)
from chatapp.store import paths
from chatapp.store.base import StoreError, TreeStoreBase

logger = get_logger(__name__)


class MatchStage(str, Enum):
    SCAN_INDEX = "scan_index"
    SCAN_DIRECTORY = "scan_directory"
    MERGE = "merge"
    DONE = "done"
    TIMEOUT = "timeout"


@dataclass
class MatchRequest:
    """State of one matching request.

    Shared between the waiting caller and the worker running the pipeline;
    all access to results goes through the lock.
    """

    contacts: list[DeviceContact]
    own_phone: str
    own_user_id: str | None = None
    operation_id: str = field(default_factory=lambda: str(uuid4()))
    stage: MatchStage = MatchStage.SCAN_INDEX
    index_failed: bool = False
    _matches: dict[str, MatchedContact] = field(default_factory=dict, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False)
    _abandoned: threading.Event = field(default_factory=threading.Event, init=False)

    def add(self, contact: DeviceContact, identity: UserIdentity) -> bool:
        """Record a match unless the user is already matched. Returns True if added."""
        with self._lock:
            if identity.id in self._matches:
                return False
            self._matches[identity.id] = MatchedContact(
                id=identity.id,
                name=contact.display_name,
                phone_number=identity.phone_number,
                username=identity.display_name,
                profile_image_ref=identity.profile_image_ref,
                status=identity.status,
            )
            return True

    def results(self) -> list[MatchedContact]:
        """Snapshot of the matches merged so far, sorted by contact name."""
        with self._lock:
            matches = list(self._matches.values())
        matches.sort(key=lambda m: m.name.casefold())
        return matches

    @property
    def match_count(self) -> int:
        with self._lock:
            return len(self._matches)

    def advance(self, stage: MatchStage) -> None:
        with self._lock:
            if self.stage == MatchStage.TIMEOUT:
                return
            self.stage = stage
        logger.debug("contact_match_stage", operation_id=self.operation_id, stage=stage.value)

    def abandon(self) -> None:
        """Mark the request timed out; the worker stops at the next check."""
        with self._lock:
            if self.stage != MatchStage.DONE:
                self.stage = MatchStage.TIMEOUT
        self._abandoned.set()

    @property
    def abandoned(self) -> bool:
        return self._abandoned.is_set()

    def is_self(self, identity: UserIdentity) -> bool:
        """The caller's own identity, by id or by an equivalent phone number."""
        if self.own_user_id and identity.id == self.own_user_id:
            return True
        if not self.own_phone:
            return False
        return is_same_number(identity.phone_number, self.own_phone) or formats_overlap(
            identity.phone_number, self.own_phone
        )


class ContactMatcher:
    """Runs matching requests on a worker pool with a bounded wait."""

    def __init__(
        self,
        store: TreeStoreBase,
        timeout_s: float | None = None,
        executor: Executor | None = None,
    ):
        self._store = store
        if timeout_s is None:
            timeout_s = get_settings().contact_match_timeout_s
        self._timeout_s = timeout_s
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=2, thread_name_prefix="contact-match"
        )

    def submit(
        self,
        local_contacts: list[DeviceContact],
        own_phone: str,
        own_user_id: str | None = None,
    ) -> tuple[MatchRequest, Future]:
        """Start a matching request without waiting for it."""
        request = MatchRequest(
            contacts=list(local_contacts), own_phone=own_phone, own_user_id=own_user_id
        )
        ctx = contextvars.copy_context()
        future = self._executor.submit(ctx.run, self.run, request)
        return request, future

    def match_contacts_against_directory(
        self,
        local_contacts: list[DeviceContact],
        own_phone: str,
        own_user_id: str | None = None,
    ) -> list[MatchedContact]:
        """Match contacts, waiting at most the configured timeout.

        Returns:
            Matched contacts; a partial (possibly empty) list on timeout.
        """
        request, future = self.submit(local_contacts, own_phone, own_user_id)
        try:
            return future.result(timeout=self._timeout_s)
        except FutureTimeoutError:
            request.abandon()
            partial = request.results()
            logger.warning(
                "contact_match_timeout",
                operation_id=request.operation_id,
                timeout_s=self._timeout_s,
                partial_matches=len(partial),
            )
            return partial

    def run(self, request: MatchRequest) -> list[MatchedContact]:
        """Run the whole pipeline synchronously for request."""
        set_operation_id(request.operation_id)
        logger.info(
            "contact_match_started",
            operation_id=request.operation_id,
            contacts=len(request.contacts),
        )
        try:
            self._scan_index(request)
            if request.match_count == 0 and not request.abandoned:
                request.advance(MatchStage.SCAN_DIRECTORY)
                self._scan_directory(request)
        except Exception:
            # Matching never raises to the caller
            logger.exception("contact_match_failed", operation_id=request.operation_id)

        request.advance(MatchStage.MERGE)
        results = request.results()
        request.advance(MatchStage.DONE)
        logger.info(
            "contact_match_finished",
            operation_id=request.operation_id,
            stage=request.stage.value,
            matches=len(results),
            index_failed=request.index_failed,
        )
        return results

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    def _scan_index(self, request: MatchRequest) -> None:
        for contact in request.contacts:
            if request.abandoned:
                return
            for candidate in sorted(candidate_formats(contact.raw_phone_number)):
                key = candidate.lstrip("+")
                if not key:
                    continue
                try:
                    user_id = self._store.get(paths.phone_index_path(key))
                    if not isinstance(user_id, str) or not user_id:
                        continue
                    record = self._store.get(paths.user_path(user_id))
                except StoreError as e:
                    logger.warning(
                        "phone_index_lookup_failed",
                        operation_id=request.operation_id,
                        error=e.message,
                    )
                    request.index_failed = True
                    return
                if not isinstance(record, dict):
                    # Stale index entry
                    continue
                try:
                    identity = UserIdentity.from_tree(user_id, record)
                except ValueError:
                    continue
                if request.is_self(identity):
                    continue
                request.add(contact, identity)
                break

    def _scan_directory(self, request: MatchRequest) -> None:
        try:
            users = self._store.get(paths.USERS_ROOT) or {}
        except StoreError as e:
            logger.warning(
                "directory_scan_failed", operation_id=request.operation_id, error=e.message
            )
            return

        directory: list[tuple[UserIdentity, str, set[str]]] = []
        for user_id, record in users.items():
            if not isinstance(record, dict):
                continue
            try:
                identity = UserIdentity.from_tree(user_id, record)
            except ValueError:
                continue
            normalized = normalize(identity.phone_number)
            if not normalized or request.is_self(identity):
                continue
            directory.append((identity, normalized, candidate_formats(identity.phone_number)))

        for contact in request.contacts:
            if request.abandoned:
                return
            contact_formats = candidate_formats(contact.raw_phone_number)
            if not contact_formats:
                continue
            for identity, normalized, directory_formats in directory:
                if normalized in contact_formats or not contact_formats.isdisjoint(
                    directory_formats
                ):
                    request.add(contact, identity)


class ContactSource(ABC):
    """Device address book. Reads block and must run off the interactive thread."""

    @abstractmethod
    def read_contacts(self) -> list[DeviceContact]: ...


class StaticContactSource(ContactSource):
    """Contact source backed by a fixed list."""

    def __init__(self, contacts: list[DeviceContact]):
        self._contacts = list(contacts)

    def read_contacts(self) -> list[DeviceContact]:
        return list(self._contacts)


def load_and_match(
    source: ContactSource,
    matcher: ContactMatcher,
    own_phone: str,
    own_user_id: str | None = None,
    executor: Executor | None = None,
) -> Future:
    """Read the address book and match it, off the calling thread.

    Returns:
        Future resolving to the matched contacts. It never fails: a contact
        source error resolves to an empty list.
    """

    def _load_and_match() -> list[MatchedContact]:
        try:
            contacts = dedupe_device_contacts(source.read_contacts())
        except Exception:
            logger.exception("contact_source_read_failed")
            return []
        return matcher.match_contacts_against_directory(contacts, own_phone, own_user_id)

    owned = executor is None
    executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="contact-load")
    try:
        return executor.submit(contextvars.copy_context().run, _load_and_match)
    finally:
        if owned:
            executor.shutdown(wait=False)


def filter_contacts(matches: list[MatchedContact], query: str | None) -> list[MatchedContact]:
    """Filter matches by contact name, username or phone number (case-insensitive)."""
    needle = (query or "").strip().casefold()
    if not needle:
        return list(matches)
    return [
        m
        for m in matches
        if needle in m.name.casefold()
        or needle in m.username.casefold()
        or needle in m.phone_number.casefold()
    ]
