"""Model backends."""

from modelgate.engine.fake import FakeBackend, FakeModel
from modelgate.engine.protocol import Backend

__all__ = ["Backend", "FakeBackend", "FakeModel"]
