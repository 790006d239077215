from fixloop.state.store import RunStateStore, StateError

__all__ = ["RunStateStore", "StateError"]
