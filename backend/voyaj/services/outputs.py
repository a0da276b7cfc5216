"""
Structured outputs handed from the engine to the Responder.

The engine never writes prose. Handlers and entry actions describe what
happened as an Output tagged by ``type``; the Responder turns that into text.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

GROUP = "group"
INDIVIDUAL = "individual"


@dataclass
class Output:
    type: str
    send_to: str = GROUP
    recipient: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def group(cls, output_type: str, **data) -> "Output":
        return cls(type=output_type, send_to=GROUP, data=data)

    @classmethod
    def individual(cls, output_type: str, recipient: Optional[str] = None, **data) -> "Output":
        return cls(type=output_type, send_to=INDIVIDUAL, recipient=recipient, data=data)

    def get(self, key: str, default=None):
        return self.data.get(key, default)
