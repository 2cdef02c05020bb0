"""Live calendar example: 2 pages following one change log through a StreamDaemon.

Run this script to see a create and a delete made by one user show up in two
independently connected calendar pages.
"""

import anyio

from calstream import CalendarState, ReconnectController, StreamConfig
from calstream.core.memory import MemoryChangeLog
from calstream.core.writer import event_view
from calstream.infra.daemon import StreamDaemon
from calstream.net.transport import SSETransport, WebSocketTransport


async def follow(name: str, controller: ReconnectController, expected_ids: set[str]) -> None:
    """Run a page's stream until its calendar shows exactly the expected entries."""
    async with anyio.create_task_group() as tg:
        tg.start_soon(controller.run)
        with anyio.fail_after(10):
            while set(controller.calendar.ids) != expected_ids:
                await anyio.sleep(0.05)
        print(f"[{name}] calendar now shows {sorted(controller.calendar.ids)} (cursor={controller.cursor})")
        controller.stop()


async def main():
    port = 8766
    config = StreamConfig(poll_interval=0.2, heartbeat_interval=2.0, max_duration=3.0, port=port)
    daemon = StreamDaemon(config, store=MemoryChangeLog())

    async with anyio.create_task_group() as tg:
        tg.start_soon(daemon.run_forever)
        while not daemon.started:
            await anyio.sleep(0.05)
        print(f"StreamDaemon running on {daemon.url}")

        page_a = ReconnectController(
            SSETransport(f"{daemon.url}/api/updates/stream"),
            calendar=CalendarState(visible_users=[7]),
        )
        page_b = ReconnectController(
            WebSocketTransport(f"ws://127.0.0.1:{port}/api/updates/ws"),
            calendar=CalendarState(),
        )

        writer = daemon.service.writer
        owner = {"id": 7, "name": "Ada", "color": "#3788d8"}
        event = {"id": 42, "title": "Meeting", "start": "2026-10-19T10:00:00", "end": "2026-10-19T11:00:00"}

        # Create
        await writer.event_created(event, resolver=lambda e: event_view(e, owner))
        async with anyio.create_task_group() as pages:
            pages.start_soon(follow, "page_a", page_a, {"42"})
            pages.start_soon(follow, "page_b", page_b, {"42"})

        # Delete, picked up on reconnect from the remembered cursor
        await writer.event_deleted(42)
        async with anyio.create_task_group() as pages:
            pages.start_soon(follow, "page_a", page_a, set())
            pages.start_soon(follow, "page_b", page_b, set())

        await page_a.aclose()
        await page_b.aclose()
        print(f"[daemon] log entries: {len(daemon.service.store)}")
        daemon.stop()
    print("StreamDaemon stopped")


if __name__ == "__main__":
    anyio.run(main)
