"""Event loop feeding Vault descriptor events to the reconciler.

Events are handled one at a time, so no two passes for the same
descriptor ever overlap. When the watch times out the descriptors are
listed again, which re-delivers every descriptor and retries any pass
that failed earlier.
"""

from collections.abc import Callable
from typing import Any

from icecream import ic

from vault_operator import console
from vault_operator.cluster import ObjectStore
from vault_operator.config import OperatorConfig
from vault_operator.exceptions import DescriptorError, VaultOperatorError
from vault_operator.models import Vault, VaultEvent
from vault_operator.reconciler import Handler

_WATCH_EVENT_TYPES = {"ADDED": False, "MODIFIED": False, "DELETED": True}


def to_event(event_type: str, obj: dict[str, Any]) -> VaultEvent | None:
    """Translate a raw watch event into a VaultEvent.

    Args:
        event_type: The watch event type.
        obj: The object carried by the event.

    Returns:
        The VaultEvent, or None for event types the operator ignores.

    Raises:
        DescriptorError: If the object is not a valid Vault resource.

    """
    if event_type not in _WATCH_EVENT_TYPES:
        return None
    return VaultEvent(vault=Vault.from_object(obj), deleted=_WATCH_EVENT_TYPES[event_type])


def dispatch(handler: Handler, event_type: str, obj: dict[str, Any]) -> bool:
    """Handle one watch event, logging instead of raising on failure.

    Returns:
        True when the event was handled successfully or ignored.

    """
    if event_type == "ERROR":
        console.warning(f"Watch reported an error: {obj.get('message', obj)}")
        return False

    name = f"{obj.get('metadata', {}).get('namespace')}/{obj.get('metadata', {}).get('name')}"
    try:
        event = to_event(event_type, obj)
        if event is None:
            ic(event_type)
            return True
        handler.handle(event)
    except DescriptorError as err:
        console.error(f"Invalid Vault {name}: {err}")
        return False
    except VaultOperatorError as err:
        console.error(f"Failed to reconcile Vault {name}: {err}")
        return False
    return True


def run(
    store: ObjectStore,
    config: OperatorConfig,
    *,
    keep_running: Callable[[], bool] = lambda: True,
) -> None:
    """Watch Vault descriptors and reconcile them until stopped.

    Args:
        store: Access to the Kubernetes objects.
        config: Operator settings.
        keep_running: Checked before each watch cycle.

    Raises:
        ClusterConnectionError: If the watch cannot be established.

    """
    handler = Handler(store, config)
    scope = config.namespace or "all namespaces"
    console.action(f"Watching Vault resources in {console.highlight(scope)}")

    while keep_running():
        for event_type, obj in store.watch_vaults(config.namespace, config.resync_seconds):
            dispatch(handler, event_type, obj)
        ic("resync")
