"""State models derived from the qtest event stream."""

from .irq_table import IrqTable
