"""CLI entry point: ``python -m obd_forensics <command> [options]``."""

from __future__ import annotations

import argparse
import asyncio
import sys

import structlog


def _configure_logging(level: str, fmt: str) -> None:
    """Set up structlog with console or JSON rendering."""
    import logging

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper(), logging.INFO),
        stream=sys.stderr,
    )

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def build_parser() -> argparse.ArgumentParser:
    from obd_forensics.schemas import FuelChangeContext

    parser = argparse.ArgumentParser(
        prog="obd_forensics",
        description="OBD-II fuel and battery forensics over an ELM327 adapter",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=None,
        help="Log results locally; never POST to API",
    )
    parser.add_argument("--port", help="Override OBD_PORT ('sim', host:port or device)")
    parser.add_argument("--scenario", help="Override OBD_SIM_SCENARIO")

    sub = parser.add_subparsers(dest="command", required=True)

    live = sub.add_parser("live", help="Poll and print live PIDs")
    live.add_argument("--once", action="store_true", default=False)

    sub.add_parser("probe", help="Discover supported PIDs, VIN and voltage")

    codes = sub.add_parser("dtc", help="Read stored, pending and permanent trouble codes")
    codes.add_argument("--freeze-frame", action="store_true", default=False, help="Also read freeze frame 0")
    codes.add_argument(
        "--clear",
        action="store_true",
        default=False,
        help="Clear codes after reading them (also resets fuel trim adaptation)",
    )

    sub.add_parser("crank", help="Capture and classify one engine start")
    sub.add_parser("drain", help="Monitor parasitic draw with the engine off")

    contexts = [c.value for c in FuelChangeContext]

    quick = sub.add_parser("quick-test", help="Audit the fuel already in the tank")
    quick.add_argument("--fuel-context", choices=contexts, default=FuelChangeContext.SAME_FUEL.value)

    refuel = sub.add_parser("refuel", help="Audit a refuel (resumes an interrupted one)")
    refuel.add_argument("--price", type=float, default=0.0, help="Price per litre")
    refuel.add_argument("--liters", type=float, default=0.0, help="Litres added")
    refuel.add_argument("--station", default=None)
    refuel.add_argument("--fuel-context", choices=contexts, default=FuelChangeContext.UNKNOWN.value)
    refuel.add_argument(
        "--discard-pending",
        action="store_true",
        default=False,
        help="Drop an interrupted session instead of resuming it",
    )
    return parser


def main() -> None:
    args = build_parser().parse_args()

    # Load settings from env / .env file first, then override with CLI flags.
    from obd_forensics.config import ForensicsSettings
    from obd_forensics.schemas import FuelChangeContext

    settings = ForensicsSettings()
    if args.dry_run is True:
        settings.dry_run = True
    if args.port:
        settings.obd_port = args.port
    if args.scenario:
        settings.obd_sim_scenario = args.scenario

    _configure_logging(settings.log_level, settings.log_format)

    logger = structlog.get_logger("obd_forensics")
    logger.info(
        "forensics_starting",
        version=__import__("obd_forensics").__version__,
        command=args.command,
        mode="simulation" if settings.is_simulation else "live",
        dry_run=settings.dry_run,
        port=settings.obd_port,
    )

    from obd_forensics.runner import run_command

    try:
        asyncio.run(
            run_command(
                settings,
                args.command,
                once=getattr(args, "once", False),
                price_per_liter=getattr(args, "price", 0.0),
                liters_added=getattr(args, "liters", 0.0),
                station_name=getattr(args, "station", None),
                fuel_context=FuelChangeContext(
                    getattr(args, "fuel_context", FuelChangeContext.UNKNOWN.value)
                ),
                discard_pending=getattr(args, "discard_pending", False),
                clear_codes=getattr(args, "clear", False),
                freeze_frame=getattr(args, "freeze_frame", False),
            )
        )
    except KeyboardInterrupt:
        logger.info("forensics_interrupted")
        sys.exit(0)
    except Exception:
        logger.exception("command_failed", command=args.command)
        sys.exit(1)


if __name__ == "__main__":
    main()
