"""MCP server entry point for driving a QEMU machine over qtest.

Exposes the qtest command set as tools, plus resources describing the
connection and the IRQ line table, using the official Python MCP SDK
with stdio transport.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from mcp.server.fastmcp import FastMCP

from .client import QTestClient
from .config import ServerConfig, resolve_transport
from .errors import QTestError
from .models.irq_table import IrqTable
from .protocol.commands import MEMORY_WIDTHS, PORT_WIDTHS

logger = logging.getLogger(__name__)

mcp = FastMCP(
    "qtest",
    instructions="MCP server for driving a QEMU machine through the qtest protocol",
)

# Global connection state
_config = ServerConfig.from_env()
_client: QTestClient | None = None
_irq_table = IrqTable()
_irq_task: asyncio.Task | None = None


def _get_client() -> QTestClient:
    """Get the active client, raising if not connected."""
    if _client is None or not _client.running:
        raise RuntimeError(
            "Not connected to QEMU. Use the 'connect' tool first."
        )
    return _client


async def _watch_irqs(client: QTestClient, table: IrqTable) -> None:
    async for irq in client.irqs:
        table.apply(irq)
    logger.info("IRQ stream ended")


def _error(e: Exception) -> dict[str, Any]:
    return {"error": str(e), "type": type(e).__name__}


async def _release_client() -> None:
    """Close the current client and its IRQ watcher, if any."""
    global _client, _irq_task
    client, task = _client, _irq_task
    _client = None
    _irq_task = None
    if client is not None:
        await client.close()
    if task is not None:
        await task


# ─── CONNECTION TOOLS ─────────────────────────────────────────────────

@mcp.tool()
async def connect(
    address: str | None = None,
    transport: str | None = None,
    timeout: float = 60.0,
) -> dict[str, Any]:
    """Listen for QEMU and wait for it to connect.

    Start QEMU with ``-qtest tcp:<address>`` or ``-qtest unix:<path>``
    pointing at the same address.

    Args:
        address: ``host:port`` or socket path (defaults to QTEST_ADDRESS).
        transport: ``tcp`` or ``unix`` (defaults to QTEST_TRANSPORT).
        timeout: Seconds to wait for QEMU to connect.
    """
    global _client, _irq_task
    if _client is not None:
        if _client.running:
            return {
                "connected": True,
                "message": "Already connected",
                "address": _client.address,
            }
        # QEMU went away; free the old listener before binding again.
        await _release_client()

    try:
        transport_cls = resolve_transport(transport or _config.transport)
        client = await QTestClient.create(address or _config.address, transport_cls)
    except (OSError, ValueError) as e:
        return _error(e)

    try:
        await asyncio.wait_for(client.attach_connection(), timeout)
    except asyncio.TimeoutError:
        await client.close()
        return {"error": f"QEMU did not connect within {timeout} seconds"}
    except OSError as e:
        await client.close()
        return _error(e)

    _client = client
    _irq_table.clear()
    _irq_task = asyncio.create_task(_watch_irqs(client, _irq_table))
    return {"connected": True, "address": client.address}


@mcp.tool()
async def disconnect() -> dict[str, bool]:
    """Close the qtest connection."""
    await _release_client()
    return {"disconnected": True}


@mcp.tool()
def get_connection_info() -> dict[str, Any]:
    """Report the listener address and whether QEMU is attached."""
    if _client is None:
        return {"connected": False, "defaults": _config.to_dict()}
    return {
        "connected": _client.running,
        "address": _client.address,
        "transport": type(_client.transport).__name__,
    }


# ─── CLOCK TOOLS ─────────────────────────────────────────────────────

@mcp.tool()
async def clock_step(ns: int | None = None) -> dict[str, Any]:
    """Advance the virtual clock.

    Args:
        ns: Nanoseconds to advance; omit to run to the next timer deadline.
    """
    try:
        response = await _get_client().clock_step(ns)
    except (QTestError, ValueError) as e:
        return _error(e)
    return response.to_dict()


@mcp.tool()
async def clock_set(ns: int) -> dict[str, Any]:
    """Set the virtual clock to an absolute time in nanoseconds."""
    try:
        now = await _get_client().clock_set(ns)
    except (QTestError, ValueError) as e:
        return _error(e)
    return {"clock_ns": now}


# ─── IRQ TOOLS ───────────────────────────────────────────────────────

@mcp.tool()
async def irq_intercept_in(qom_path: str) -> dict[str, Any]:
    """Intercept a device's input GPIO lines (once per device).

    Args:
        qom_path: QOM path of the device, e.g. ``/machine/soc``.
    """
    try:
        response = await _get_client().irq_intercept_in(qom_path)
    except QTestError as e:
        return _error(e)
    return response.to_dict()


@mcp.tool()
async def irq_intercept_out(qom_path: str) -> dict[str, Any]:
    """Intercept a device's output GPIO lines (once per device)."""
    try:
        response = await _get_client().irq_intercept_out(qom_path)
    except QTestError as e:
        return _error(e)
    return response.to_dict()


@mcp.tool()
async def set_irq_in(
    qom_path: str, irq_name: str, line: int, level: int
) -> dict[str, Any]:
    """Set the level of a named input GPIO line on a device.

    Args:
        qom_path: QOM path of the device, e.g. ``/machine/soc/gpio[2]``.
        irq_name: Named GPIO list, e.g. ``input-in``.
        line: Line index within the list.
        level: New level (usually 0 or 1).
    """
    try:
        response = await _get_client().set_irq_in(qom_path, irq_name, line, level)
    except (QTestError, ValueError) as e:
        return _error(e)
    return response.to_dict()


@mcp.tool()
def get_irq(line: int) -> dict[str, Any]:
    """Report whether an intercepted IRQ line is currently raised."""
    return {"line": line, "raised": _irq_table.get(line)}


@mcp.tool()
def list_irqs(recent: int = 20) -> dict[str, Any]:
    """List IRQ line levels and the most recent IRQ events.

    Args:
        recent: Number of recent events to include.
    """
    result = _irq_table.to_dict()
    result["recent"] = _irq_table.recent(recent)
    return result


# ─── PORT I/O TOOLS ──────────────────────────────────────────────────

@mcp.tool()
async def port_in(addr: int, width: str = "b") -> dict[str, Any]:
    """Read an I/O port.

    Args:
        addr: Port address.
        width: Access width: b (8), w (16) or l (32 bits).
    """
    if width not in PORT_WIDTHS:
        return {"error": f"Unknown width '{width}'. Valid: {list(PORT_WIDTHS)}"}
    try:
        value = await _get_client().port_in(width, addr)
    except (QTestError, ValueError) as e:
        return _error(e)
    return {"addr": hex(addr), "value": value, "hex": hex(value)}


@mcp.tool()
async def port_out(addr: int, value: int, width: str = "b") -> dict[str, Any]:
    """Write an I/O port.

    Args:
        addr: Port address.
        value: Value to write.
        width: Access width: b (8), w (16) or l (32 bits).
    """
    if width not in PORT_WIDTHS:
        return {"error": f"Unknown width '{width}'. Valid: {list(PORT_WIDTHS)}"}
    try:
        response = await _get_client().port_out(width, addr, value)
    except (QTestError, ValueError) as e:
        return _error(e)
    return response.to_dict()


# ─── MEMORY TOOLS ────────────────────────────────────────────────────

@mcp.tool()
async def mem_read(addr: int, width: str = "l") -> dict[str, Any]:
    """Read a register or word of guest memory.

    Args:
        addr: Guest physical address.
        width: Access width: b (8), w (16), l (32) or q (64 bits).
    """
    if width not in MEMORY_WIDTHS:
        return {"error": f"Unknown width '{width}'. Valid: {list(MEMORY_WIDTHS)}"}
    try:
        value = await _get_client().mem_read(width, addr)
    except (QTestError, ValueError) as e:
        return _error(e)
    return {"addr": hex(addr), "value": value, "hex": hex(value)}


@mcp.tool()
async def mem_write(addr: int, value: int, width: str = "l") -> dict[str, Any]:
    """Write a register or word of guest memory.

    Args:
        addr: Guest physical address.
        value: Value to write.
        width: Access width: b (8), w (16), l (32) or q (64 bits).
    """
    if width not in MEMORY_WIDTHS:
        return {"error": f"Unknown width '{width}'. Valid: {list(MEMORY_WIDTHS)}"}
    try:
        response = await _get_client().mem_write(width, addr, value)
    except (QTestError, ValueError) as e:
        return _error(e)
    return response.to_dict()


@mcp.tool()
async def read_memory(addr: int, size: int) -> dict[str, Any]:
    """Read a block of guest memory as hex text.

    Args:
        addr: Guest physical address.
        size: Number of bytes.
    """
    try:
        data = await _get_client().read(addr, size)
    except (QTestError, ValueError) as e:
        return _error(e)
    return {"addr": hex(addr), "size": size, "data": data}


@mcp.tool()
async def write_memory(
    addr: int, data: str, data_len: int | None = None
) -> dict[str, Any]:
    """Write a block of hex-encoded data to guest memory.

    Args:
        addr: Guest physical address.
        data: Hex string, e.g. ``0xdeadbeef``.
        data_len: Override for the length field.
    """
    try:
        response = await _get_client().write(addr, data, data_len)
    except (QTestError, ValueError) as e:
        return _error(e)
    return response.to_dict()


@mcp.tool()
async def b64write(addr: int, data: str) -> dict[str, Any]:
    """Write text to guest memory using base64 transfer encoding.

    Args:
        addr: Guest physical address.
        data: Text to write; its UTF-8 bytes are stored.
    """
    try:
        response = await _get_client().b64write(addr, data)
    except (QTestError, ValueError) as e:
        return _error(e)
    return response.to_dict()


# ─── RESOURCES ───────────────────────────────────────────────────────

@mcp.resource("qtest://connection/info")
def resource_connection_info() -> str:
    """Connection state as JSON."""
    return json.dumps(get_connection_info(), indent=2)


@mcp.resource("qtest://irq/state")
def resource_irq_state() -> str:
    """IRQ line levels as JSON."""
    return json.dumps(_irq_table.to_dict(), indent=2)


# ─── PROMPTS ─────────────────────────────────────────────────────────

@mcp.prompt()
def inspect_device(qom_path: str, base_addr: str) -> str:
    """Walk through probing a memory-mapped device."""
    return f"""Inspect the device at {qom_path} mapped at {base_addr}.

1. Use irq_intercept_out on {qom_path} so its output lines are reported.
2. Read the first few registers with mem_read (width l).
3. Step the clock with clock_step and check list_irqs for raised lines.
4. Summarize the register values and any IRQ activity."""


# ─── ENTRY POINT ─────────────────────────────────────────────────────

def main():
    """Run the MCP server with stdio transport."""
    logging.basicConfig(level=_config.log_level)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
