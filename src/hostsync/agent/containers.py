from __future__ import annotations

import copy
from typing import Callable, Generic, Iterator, TypeVar

from .entities import AuthorizedKey, DnsSearchDomain, DnsServer, LocalUser, NtpServer

T = TypeVar("T")


class KeyNotFoundError(KeyError):
    pass


class DuplicateKeyError(ValueError):
    pass


class KeyedList(Generic[T]):
    """
    Ordered, owning list of entries addressed by a key field.

    Entries are appended at the tail and stored as deep copies, so the caller may
    reuse or mutate the value it passed to `add`. Lookups are linear scans over
    the key field; the first match wins. Duplicate keys are accepted unless the
    list is built with `reject_duplicates=True`.
    """

    key_of: Callable[[T], str]

    def __init__(self, entries: list[T] | None = None, *, reject_duplicates: bool = False) -> None:
        self._items: list[T] = []
        self.reject_duplicates = reject_duplicates
        for entry in entries or []:
            self.add(entry)

    @staticmethod
    def compare(left: str, right: str) -> bool:
        return left == right

    def add(self, value: T) -> T:
        key = type(self).key_of(value)
        if self.reject_duplicates and self.find(key) is not None:
            raise DuplicateKeyError(f"duplicate key: {key}")
        owned = copy.deepcopy(value)
        self._items.append(owned)
        return owned

    def find(self, key: str) -> T | None:
        for item in self._items:
            if self.compare(type(self).key_of(item), key):
                return item
        return None

    def remove(self, key: str) -> None:
        found = self.find(key)
        if found is None:
            raise KeyNotFoundError(key)
        # Identity, not equality: duplicates must not shadow each other.
        for idx, item in enumerate(self._items):
            if item is found:
                del self._items[idx]
                break

    def clear(self) -> None:
        self._items = []

    def keys(self) -> list[str]:
        return [type(self).key_of(item) for item in self._items]

    def __iter__(self) -> Iterator[T]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, KeyedList):
            return NotImplemented
        return type(self) is type(other) and self._items == other._items

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._items!r})"


class AuthorizedKeyList(KeyedList[AuthorizedKey]):
    key_of = staticmethod(lambda key: key.name)


class LocalUserList(KeyedList[LocalUser]):
    key_of = staticmethod(lambda user: user.name)


class DnsSearchList(KeyedList[DnsSearchDomain]):
    key_of = staticmethod(lambda search: search.domain)


class DnsServerList(KeyedList[DnsServer]):
    key_of = staticmethod(lambda server: server.name)


class NtpServerList(KeyedList[NtpServer]):
    key_of = staticmethod(lambda server: server.name)
