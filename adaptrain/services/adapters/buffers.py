"""Keyed ownership of the tensors an adapter allocates."""

import structlog
import torch

from adaptrain.core.exceptions import ResourceError

logger = structlog.get_logger()


class BufferRegistry:
    """Owns every tensor an adapter allocates, by key.

    A key may only be allocated while it is free, so resizing a buffer means
    ``release`` then ``allocate``. After ``release_all`` the registry is
    closed and refuses further allocations.
    """

    def __init__(self, owner: str = "adapter"):
        self._owner = owner
        self._buffers: dict[str, torch.Tensor] = {}
        self._closed = False
        self.allocation_count = 0
        self.release_count = 0

    def allocate(
        self,
        key: str,
        tensor: torch.Tensor,
        trainable: bool = False,
        copy: bool = True,
    ) -> torch.Tensor:
        if self._closed:
            raise ResourceError(f"{self._owner}: buffers already released, cannot allocate '{key}'.")
        if key in self._buffers:
            raise ResourceError(f"{self._owner}: buffer '{key}' is still allocated.")

        buf = tensor.detach().clone() if copy else tensor
        if trainable:
            buf.requires_grad_(True)
        self._buffers[key] = buf
        self.allocation_count += 1
        return buf

    def get(self, key: str) -> torch.Tensor:
        try:
            return self._buffers[key]
        except KeyError:
            raise ResourceError(f"{self._owner}: no buffer named '{key}'.") from None

    def release(self, key: str) -> None:
        if self._buffers.pop(key, None) is not None:
            self.release_count += 1

    def release_all(self) -> None:
        released = len(self._buffers)
        self._buffers.clear()
        self.release_count += released
        self._closed = True
        logger.debug("adapter_buffers_released", owner=self._owner, released=released)

    def __contains__(self, key: str) -> bool:
        return key in self._buffers

    def __len__(self) -> int:
        return len(self._buffers)

    def keys(self) -> list[str]:
        return list(self._buffers)

    def tensors(self) -> list[torch.Tensor]:
        return list(self._buffers.values())

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def live_bytes(self) -> int:
        return sum(t.numel() * t.element_size() for t in self._buffers.values())
