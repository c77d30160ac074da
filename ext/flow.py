"""EVL extension: listener flow control.

Cancel stops the remaining listeners of the event currently being handled.
The listener that dispatched it still runs to its end.
"""

from __future__ import annotations

from events import Event
from extensions import ExtensionAPI


EVL_EXTENSION_NAME = "flow"
EVL_EXTENSION_API_VERSION = 1


class Cancel(Event):
    event_name = "Cancel"

    def cancels_listeners(self) -> bool:
        return True


def evl_register(ext: ExtensionAPI) -> None:
    ext.metadata(name=EVL_EXTENSION_NAME, version="0.1.0")
    ext.register_event(Cancel)
