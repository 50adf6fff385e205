from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from .config import DetectionOptions, ScannerConfig
from .db import SqliteKnowledgeBase, load_records
from .errors import ScannerError
from .models import ScanStatus
from .scanner import ScanSession
from .utils import (
    configure_logging,
    format_exception,
    load_targets_from_file,
    restore_interrupt_handling,
    setup_interrupt_handling,
)

logger = logging.getLogger("portaudit.cli")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="portaudit",
        description="Escaneo concurrente de puertos con deteccion de servicios y vulnerabilidades.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    scan_parser = subparsers.add_parser(
        "scan",
        help="Escanea uno o mas anfitriones.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    scan_parser.add_argument("-H", "--host", dest="host", help="Hostname, IP o bloque CIDR objetivo.")
    scan_parser.add_argument(
        "-lh",
        "--list-hosts",
        dest="list_hosts",
        help="Archivo de texto con hostnames/IP (separados por linea, espacio o coma).",
    )
    scan_parser.add_argument(
        "-p",
        "--ports",
        default="quick",
        help="Puertos: quick, standard, full, lista (22,80) o rangos (1-1024).",
    )
    scan_parser.add_argument("--syn", action="store_true", help="Usa SYN scan (requiere root y scapy).")
    scan_parser.add_argument(
        "--allow-downgrade",
        action="store_true",
        help="Si SYN no esta disponible, continua con connect scan.",
    )
    scan_parser.add_argument("--udp", action="store_true", help="Incluye sondas UDP.")
    scan_parser.add_argument("--no-tcp", action="store_true", help="Omite las sondas TCP.")
    scan_parser.add_argument("--threads", type=int, default=200, help="Sondas simultaneas maximas.")
    scan_parser.add_argument("--timeout", type=int, default=1000, help="Timeout por sonda en milisegundos.")
    scan_parser.add_argument("--retries", type=int, default=1, help="Reintentos ante silencio (0-2).")
    scan_parser.add_argument("--rate", type=float, default=None, help="Limite de sondas por segundo.")
    scan_parser.add_argument("--chunk-size", type=int, default=100, help="Sondas admitidas por ronda.")
    scan_parser.add_argument("--deadline", type=float, default=None, help="Tiempo maximo total en segundos.")
    scan_parser.add_argument("--no-service", action="store_true", help="Omite la identificacion de servicios.")
    scan_parser.add_argument("--no-banner", action="store_true", help="Identifica servicios solo por puerto.")
    scan_parser.add_argument("--os", action="store_true", help="Estima el sistema operativo.")
    scan_parser.add_argument("--traceroute", action="store_true", help="Traza la ruta (requiere root).")
    scan_parser.add_argument("--vuln-db", default=None, help="Base SQLite de vulnerabilidades.")
    scan_parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        default="info",
        help="Nivel de log.",
    )

    import_parser = subparsers.add_parser(
        "import-vulns",
        help="Carga registros de vulnerabilidades (JSON) en una base SQLite.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    import_parser.add_argument("--input", required=True, help="Archivo JSON con los registros.")
    import_parser.add_argument("--vuln-db", required=True, help="Base SQLite destino.")

    return parser


def _gather_targets(host: Optional[str], list_path: Optional[str]) -> Sequence[str]:
    targets: List[str] = []
    seen = set()
    if host:
        clean = host.strip()
        if clean:
            targets.append(clean)
            seen.add(clean)
    if list_path:
        for entry in load_targets_from_file(Path(list_path)):
            if entry not in seen:
                targets.append(entry)
                seen.add(entry)
    return targets


def _build_config(args: argparse.Namespace) -> ScannerConfig:
    return ScannerConfig(
        timeout_ms=args.timeout,
        max_threads=args.threads,
        chunk_size=args.chunk_size,
        syn_enabled=args.syn,
        udp_enabled=args.udp,
        tcp_enabled=not args.no_tcp,
        rate_limit=args.rate,
        enabled_detections=DetectionOptions(
            service=not args.no_service,
            banner=not args.no_banner,
            os=args.os,
            traceroute=args.traceroute,
        ),
        retries=args.retries,
        deadline_s=args.deadline,
        allow_downgrade=args.allow_downgrade,
    )


def run_scan(args: argparse.Namespace) -> int:
    configure_logging(args.log_level)

    try:
        targets = _gather_targets(args.host, args.list_hosts)
    except FileNotFoundError as exc:
        print(f"[!] {exc}", file=sys.stderr)
        return 2
    if not targets:
        print("[!] Debe especificarse un --host o --list-hosts.", file=sys.stderr)
        return 2

    stop_event = setup_interrupt_handling()
    knowledge_base = None
    try:
        if args.vuln_db:
            knowledge_base = SqliteKnowledgeBase(Path(args.vuln_db).expanduser())
        session = ScanSession(_build_config(args), knowledge_base=knowledge_base, cancel_event=stop_event)
        reports = session.run(targets, args.ports)
    except ScannerError as exc:
        print(f"[!] {exc}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        print("\n[!] Interrupcion recibida. Finalizando.", file=sys.stderr)
        return 130
    finally:
        if knowledge_base is not None:
            knowledge_base.close()
        restore_interrupt_handling()

    partial = [report for report in reports if report.metadata.status is ScanStatus.PARTIAL]
    if partial:
        logger.warning("%d de %d reportes son parciales.", len(partial), len(reports))
        return 1
    return 0


def run_import(args: argparse.Namespace) -> int:
    configure_logging("info")
    try:
        records = load_records(Path(args.input).expanduser())
    except (OSError, ValueError) as exc:
        print(f"[!] Error leyendo registros: {format_exception(exc)}", file=sys.stderr)
        return 1

    try:
        knowledge_base = SqliteKnowledgeBase(Path(args.vuln_db).expanduser())
    except ScannerError as exc:
        print(f"[!] {exc}", file=sys.stderr)
        return 1
    try:
        imported = knowledge_base.import_records(records)
        logger.info("Importados %d registros (%d en total).", imported, knowledge_base.count())
    except ValueError as exc:
        print(f"[!] Error importando registros: {format_exception(exc)}", file=sys.stderr)
        return 1
    finally:
        knowledge_base.close()
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command == "scan":
        return run_scan(args)
    if args.command == "import-vulns":
        return run_import(args)

    parser.print_help()
    return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
