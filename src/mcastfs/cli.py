#!/usr/bin/env python3
"""
Command Line Interface for MCastFSv2 extraction
"""

import sys
import logging
import argparse
from typing import List, Optional

from .capture import CaptureReader, CaptureWriter
from .config_utils import AppConfig, load_config
from .container_decoder import ContainerDecoder
from .errors import McastFSError, ReceiveTimeout
from .extractor import Extractor
from .multicast_receiver import MulticastReceiver, parse_group
from .packet_reassembler import ChunkReassembler
from .session import ReceiveSession, StopSignal

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='mcastfs-extract',
        description='Download or read an MCastFSv2 firmware image and extract its files',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "examples:\n"
            "  mcastfs-extract -m 239.255.1.1:5000 -d out -s session.cap\n"
            "  mcastfs-extract -r session.cap -d out\n"
            "  mcastfs-extract -f firmware.bin -d out -n rootfs.gz\n"
        ),
    )

    source = parser.add_mutually_exclusive_group()
    source.add_argument('--multicast', '-m', nargs='?', const='', metavar='GROUP:PORT',
                        help='Receive the live broadcast (group/port from config if omitted)')
    source.add_argument('--replay', '-r', metavar='CAPTURE',
                        help='Replay a capture saved with --save')
    source.add_argument('--file', '-f', metavar='CONTAINER',
                        help='Read a MCastFSv2 container file')

    parser.add_argument('--save', '-s', metavar='CAPTURE',
                        help='Save received datagrams for later replay (with --multicast)')
    parser.add_argument('--directory', '-d', metavar='DIR',
                        help='Directory to extract to')
    parser.add_argument('--name', '-n', action='append', default=[], metavar='NAME',
                        help='Only extract this file name or path (repeatable)')
    parser.add_argument('--config', '-c', help='Configuration file path')
    parser.add_argument('--timeout', type=float,
                        help='Seconds to wait for each datagram (default 5)')
    parser.add_argument('--no-decompress', action='store_true',
                        help='Write compressed files as received')
    parser.add_argument('--debug', action='store_true', help='Enable DEBUG logging')
    return parser


def configure_logging(level: int):
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    if not root_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter('%(levelname)s:%(name)s:%(message)s'))
        root_logger.addHandler(handler)
    else:
        for handler in root_logger.handlers:
            handler.setLevel(level)


def receive(args: argparse.Namespace, config: AppConfig, decoder: ContainerDecoder,
            parser: argparse.ArgumentParser) -> int:
    """Run a live or replay session into decoder; returns the exit status"""
    capture = CaptureWriter(args.save) if args.save else None
    reassembler = ChunkReassembler(decoder=decoder, capture=capture)
    stop_signal = StopSignal()

    if args.replay:
        source = CaptureReader(args.replay)
    else:
        if args.multicast:
            try:
                group, port = parse_group(args.multicast)
            except ValueError as e:
                parser.error(str(e))
        elif config.receiver.group and config.receiver.port:
            group, port = config.receiver.group, config.receiver.port
        else:
            parser.error("--multicast needs GROUP:PORT (or [receiver] group/port in the config)")
        timeout = args.timeout if args.timeout is not None else config.receiver.timeout
        source = MulticastReceiver(group, port, timeout=timeout,
                                   interface=config.receiver.interface)
        if sys.stdin.isatty():
            print("Press Enter to stop downloading")
            stop_signal.watch_stdin()

    session = ReceiveSession(source, reassembler, stop_signal=stop_signal,
                             flush_incomplete=config.extract.keep_partial)
    status = 0
    try:
        session.run()
    except ReceiveTimeout as e:
        logger.error(f"Couldn't receive firmware data: {e}")
        status = 1
    except KeyboardInterrupt:
        logger.info("Interrupted, extracting what was received")
        if config.extract.keep_partial:
            reassembler.flush()
    finally:
        if isinstance(source, MulticastReceiver):
            source.stop()
        if capture is not None:
            capture.close()
    return status


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for mcastfs-extract command"""
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging(logging.DEBUG if args.debug else logging.INFO)

    try:
        config = load_config(args.config)
    except FileNotFoundError:
        print(f"❌ Configuration file not found: {args.config}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"❌ Error loading configuration: {e}", file=sys.stderr)
        return 1

    if not args.debug:
        configure_logging(getattr(logging, config.log_level, logging.INFO))

    if args.multicast is None and not args.replay and not args.file:
        parser.error("one of --multicast, --replay or --file is required")
    if args.save and args.multicast is None:
        parser.error("--save only applies to --multicast")
    if args.timeout is not None and args.timeout <= 0:
        parser.error("--timeout must be positive")

    output_dir = args.directory or config.extract.output_dir
    if not output_dir:
        parser.error("--directory is required")

    decoder = ContainerDecoder()
    status = 0
    try:
        if args.file:
            decoder.decode_file(args.file)
        else:
            status = receive(args, config, decoder, parser)
    except McastFSError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1

    extractor = Extractor(
        output_dir,
        names=args.name,
        decompress=config.extract.decompress and not args.no_decompress,
        compressed_suffixes=config.extract.compressed_suffixes,
        keep_partial=config.extract.keep_partial,
        preserve_attributes=config.extract.preserve_attributes,
    )
    try:
        report = extractor.extract(decoder.state)
    except OSError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1

    if report.issues:
        print(f"{len(report.issues)} files had problems:", file=sys.stderr)
        for issue in report.issues:
            print(f"  {type(issue).__name__}: {issue}", file=sys.stderr)

    return status


if __name__ == '__main__':
    sys.exit(main())
