#!/usr/bin/env python3
"""
Command Line Interface for Stat Recorder
"""

import sys
import json
import logging
import argparse

from .config import DEFAULT_CONFIG_PATH, load_config
from .errors import ConfigError, ValidationError


def _configure_logging(debug: bool):
    level = logging.DEBUG if debug else logging.INFO
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    if not root_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter('%(levelname)s:%(name)s:%(message)s'))
        root_logger.addHandler(handler)
    else:
        for handler in root_logger.handlers:
            handler.setLevel(level)


def _parse_headers(values):
    headers = {}
    for item in values or []:
        name, sep, value = item.partition(':')
        if not sep:
            raise ValidationError(f"header must look like 'Name: value', got {item!r}")
        headers[name.strip()] = value.strip()
    return headers


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Buffered per-day statistics recorder',
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    def add_command(name, help_text):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument('--config', '-c', default=DEFAULT_CONFIG_PATH, help='Configuration file path')
        sub.add_argument('--debug', '-d', action='store_true', help='Enable DEBUG logging')
        return sub

    daemon_parser = add_command('daemon', 'Run the recorder until SIGINT/SIGTERM')
    daemon_parser.add_argument('--stdin', action='store_true',
                               help='Ingest name<TAB>value lines from standard input')

    log_parser = add_command('log', 'Append one record and flush it')
    log_parser.add_argument('name', help='Metric name')
    log_parser.add_argument('value', help='Record value')
    log_parser.add_argument('--date', help='Date label (default: today)')

    add_command('flush', 'Flush buffered records')

    archive_parser = add_command('archive', 'Zip a completed day directory')
    archive_parser.add_argument('label', help='Date label, e.g. 20240101')

    list_parser = add_command('list', 'List day directories or the CSV files of one day')
    list_parser.add_argument('dir', nargs='?', default='', help='Directory under file_dir')

    check_parser = add_command('check-ip', 'Check a request against the IP allowlist')
    check_parser.add_argument('--remote-addr', '-r', required=True, help='Connection address')
    check_parser.add_argument('--header', '-H', action='append', help="Request header, 'Name: value'")

    return parser


def main(argv=None):
    """Main entry point for stat-recorder command"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    _configure_logging(args.debug)

    from .recorder import StatisticsRecorder

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"❌ {e}")
        print("   Use --config to specify a different file")
        sys.exit(1)

    recorder = StatisticsRecorder(config)

    try:
        if args.command == 'daemon':
            recorder.run(sys.stdin if args.stdin else None)

        elif args.command == 'log':
            recorder.append(args.name, args.value, date=args.date)
            written = recorder.flush()
            print(f"✅ {written} file(s) written")

        elif args.command == 'flush':
            print(f"✅ {recorder.flush()} file(s) written")

        elif args.command == 'archive':
            result = recorder.archive(args.label)
            print(json.dumps(result.to_dict(), indent=2))
            if not result.ok:
                sys.exit(2)

        elif args.command == 'list':
            entries = recorder.list_directory(args.dir)
            print(f"file list count: {len(entries)}")
            for entry in entries:
                print(f"  {entry.name}/" if entry.is_directory else f"  {entry.name}")

        elif args.command == 'check-ip':
            recorder.guard.reload()
            decision = recorder.check_ip(_parse_headers(args.header), args.remote_addr)
            print(json.dumps(decision.to_dict(), indent=2))
            if not decision.allowed:
                sys.exit(3)

    except ValidationError as e:
        print(f"❌ {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
