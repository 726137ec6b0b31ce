"""BandWatch command-line interface."""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import sys
from typing import List, Optional

import uvicorn
from rich.console import Console
from rich.table import Table

from bandwatch import broadcast
from bandwatch.api import create_app
from bandwatch.capture import CaptureError, ScapyCaptureSource, list_interfaces, local_ip, select_interface
from bandwatch.events import EventLog
from bandwatch.ingest import IngestState
from bandwatch.monitor import BandwidthMonitor, MonitorConfig

logger = logging.getLogger("bandwatch.cli")

DEFAULT_HOST = os.getenv("BANDWATCH_HOST", "0.0.0.0")
DEFAULT_PORT = int(os.getenv("BANDWATCH_PORT", "8080"))
DEFAULT_INTERVAL = float(os.getenv("BANDWATCH_INTERVAL", str(broadcast.DEFAULT_INTERVAL)))


def _cmd_list(args: argparse.Namespace) -> int:
	interfaces = list_interfaces()
	if args.json:
		json.dump([iface.to_dict() for iface in interfaces], sys.stdout, indent=2)
		sys.stdout.write("\n")
		return 0
	console = Console()
	table = Table(title="Available network devices", show_lines=False)
	for column in ("#", "name", "description", "addresses"):
		table.add_column(column.upper())
	for index, iface in enumerate(interfaces):
		table.add_row(str(index), iface.name, iface.description, ", ".join(iface.addresses))
	console.print(table)
	return 0


async def _watch_capture(monitor: BandwidthMonitor, server: uvicorn.Server) -> None:
	state = await monitor.wait_ingestion()
	if state in (IngestState.FAILED, IngestState.EXHAUSTED):
		logger.error("Capture ended (%s); shutting down", state.value)
		server.should_exit = True


async def _cmd_serve(args: argparse.Namespace) -> int:
	iface = select_interface(list_interfaces(), args.device)
	address = local_ip(iface)
	print(f"Starting bandwidth monitor on device: {iface.name}")
	if address:
		print(f"Local IP: {address}")
		print(f"Access from other devices: http://{address}:{args.port}")
	print(f"HTTP server binding to: {args.host}:{args.port}")

	events = EventLog(args.events_log, static_extra={"interface": iface.name}) if args.events_log else None
	config = MonitorConfig(
		interval=args.interval,
		queue_size=args.queue_size,
		send_timeout=args.send_timeout,
		local_ip=address,
	)
	monitor = BandwidthMonitor(config, events=events)
	source = ScapyCaptureSource(iface.name, bpf_filter=args.filter)
	app = create_app(monitor, source=source)
	server = uvicorn.Server(
		uvicorn.Config(app, host=args.host, port=args.port, log_level=args.log_level.lower())
	)

	watcher = asyncio.create_task(_watch_capture(monitor, server))
	try:
		await server.serve()
	finally:
		watcher.cancel()
		with contextlib.suppress(asyncio.CancelledError):
			await watcher

	if monitor.ingestion_state is IngestState.FAILED:
		sys.stderr.write(f"Error capturing on {iface.name}: {monitor.ingestor.error}\n")
		sys.stderr.write("Hint: You may need root/sudo or capabilities\n")
		return 1
	return 0


def _build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(description="Per-device bandwidth monitor with live websocket updates")
	parser.add_argument("--list", action="store_true", help="List available devices and exit")
	parser.add_argument("--json", action="store_true", help="With --list, output JSON")
	parser.add_argument("--device", help="Network device to monitor (default: first non-loopback with an address)")
	parser.add_argument("--host", default=DEFAULT_HOST, help="Host address to bind (0.0.0.0 for all interfaces)")
	parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="HTTP server port")
	parser.add_argument("--interval", type=float, default=DEFAULT_INTERVAL, help="Broadcast interval in seconds")
	parser.add_argument("--queue-size", type=int, default=broadcast.DEFAULT_QUEUE_SIZE, help="Snapshots buffered ahead of the broadcaster")
	parser.add_argument("--send-timeout", type=float, default=broadcast.DEFAULT_SEND_TIMEOUT, help="Per-subscriber delivery timeout seconds")
	parser.add_argument("--filter", help="Optional BPF capture filter")
	parser.add_argument("--events-log", help="Path to an events CSV (subscriber churn, drops, errors)")
	parser.add_argument(
		"--log-level",
		default="INFO",
		choices=["DEBUG", "INFO", "WARNING", "ERROR"],
		help="Logging verbosity",
	)
	return parser


def main(argv: Optional[List[str]] = None) -> int:
	parser = _build_parser()
	args = parser.parse_args(argv)
	logging.basicConfig(
		level=getattr(logging, args.log_level),
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
	)
	if args.list:
		return _cmd_list(args)
	try:
		return asyncio.run(_cmd_serve(args))
	except ValueError as exc:
		parser.error(str(exc))
	except CaptureError as exc:
		sys.stderr.write(f"{exc}\n")
		return 1
	except KeyboardInterrupt:
		return 0
	return 0


if __name__ == "__main__":
	sys.exit(main())
