"""Type aliases used across llama-session."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Literal, Optional, Union

ManagerId = str
ModelPath = str
TokenIds = Sequence[int]
TokenCallback = Callable[[str], None]
TokenChunkCallback = Callable[[TokenIds], None]
Gpu = Optional[Union[Literal[False], Literal["auto", "cuda", "vulkan", "metal"]]]
