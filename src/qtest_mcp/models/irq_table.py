"""Current level of every IRQ line seen on a connection."""

from __future__ import annotations

from dataclasses import dataclass, field

from ..protocol.parser import Irq


@dataclass
class IrqTable:
    """Folds the IRQ event stream into per-line levels.

    Lines that never reported an event read as lowered.
    """

    levels: dict[int, bool] = field(default_factory=dict)
    history: list[Irq] = field(default_factory=list)
    max_history: int = 256

    def apply(self, irq: Irq) -> None:
        self.levels[irq.line] = irq.raised
        self.history.append(irq)
        if len(self.history) > self.max_history:
            del self.history[: len(self.history) - self.max_history]

    def get(self, line: int) -> bool:
        return self.levels.get(line, False)

    def clear(self) -> None:
        self.levels.clear()
        self.history.clear()

    @property
    def raised_lines(self) -> list[int]:
        return sorted(line for line, raised in self.levels.items() if raised)

    def to_dict(self) -> dict:
        return {
            "levels": {str(line): self.levels[line] for line in sorted(self.levels)},
            "raised": self.raised_lines,
            "events": len(self.history),
        }

    def recent(self, count: int = 20) -> list[dict]:
        return [irq.to_dict() for irq in self.history[-count:]] if count > 0 else []
