from abc import ABC, abstractmethod
from typing import Iterator, List, Sequence, TypeVar

import httpx

from vulnrank.models.dependency import Dependency
from vulnrank.models.vulnerability import VulnMap

T = TypeVar("T")


class Analyzer(ABC):
    """A primary advisory source queried per dependency."""

    name: str

    @abstractmethod
    async def query(
        self, client: httpx.AsyncClient, dependencies: List[Dependency]
    ) -> VulnMap:
        """
        Return vulnerabilities keyed by dependency key.

        Raises HTTPRequestError only when the source produced no usable data
        at all; partial failures are logged and skipped.
        """

    @staticmethod
    def _chunks(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
        for start in range(0, len(items), size):
            yield items[start : start + size]
