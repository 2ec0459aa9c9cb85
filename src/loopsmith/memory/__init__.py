from loopsmith.memory.short_term import MemoryEntry, ShortTermMemory

__all__ = ["MemoryEntry", "ShortTermMemory"]
