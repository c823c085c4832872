from typing import Iterable, Tuple


class AllowList:
    """
    Prefix allow-list for proxy targets.

    A target is allowed when the list is empty or when its string form starts
    with one of the configured entries.

    Known limitation: this is a string prefix check, not host matching. The
    entry ``http://example.com`` also admits ``http://example.com.evil.com``
    and ``http://example.com@evil.com``. Configure entries with a trailing
    slash (``http://example.com/``) to pin the host.
    """

    def __init__(self, entries: Iterable[str] = ()):
        self._entries: Tuple[str, ...] = tuple(e for e in entries if e)

    @classmethod
    def from_csv(cls, raw: str) -> "AllowList":
        return cls(e.strip() for e in (raw or "").split(","))

    @property
    def entries(self) -> Tuple[str, ...]:
        return self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def allowed(self, target: str) -> bool:
        if not self._entries:
            return True
        return any(target.startswith(entry) for entry in self._entries)
