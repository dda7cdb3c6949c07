from engram.processes.registry import ProcessRegistry

__all__ = ["ProcessRegistry"]
