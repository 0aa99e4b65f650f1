from __future__ import annotations

from .agent_runtime.errors import ProviderFault


class CredentialRing:
    """Ordered provider keys with cyclic rotation and a tried-set.

    The tried-set is cleared at each user-initiated send; once every key has been tried
    the controller gives up with `all_credentials_failed`.
    """

    def __init__(self, keys: list[str]) -> None:
        self._keys = [k for k in (str(x or "").strip() for x in keys) if k]
        self._index = 0
        self._tried: set[int] = set()

    def __len__(self) -> int:
        return len(self._keys)

    def current(self) -> str:
        if not self._keys:
            raise ProviderFault("no_credentials")
        self._tried.add(self._index)
        return self._keys[self._index]

    def rotate(self) -> None:
        if self._keys:
            self._index = (self._index + 1) % len(self._keys)

    def exhausted(self) -> bool:
        return not self._keys or len(self._tried) >= len(self._keys)

    def reset_tried(self) -> None:
        self._tried.clear()

    def replace(self, keys: list[str]) -> None:
        self._keys = [k for k in (str(x or "").strip() for x in keys) if k]
        self._index = 0
        self._tried.clear()

    @property
    def index(self) -> int:
        return self._index
