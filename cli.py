#!/usr/bin/env python3
"""
codec-fixtures - Command Line Interface

Single entry point for regenerating a fixture corpus and, optionally,
verifying it against a decoder.
Uses codec_fixtures/pipeline.py for generation and codec_fixtures/verify.py
for verification.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

import config
from codec_fixtures.decoders import DECODER_NAMES
from codec_fixtures.errors import ManifestDrift, UnsupportedParameterCombination
from codec_fixtures.formats import ContainerFormat
from codec_fixtures.manifest import ManifestEncoder, load_manifest, manifest_path
from codec_fixtures.params import GenerationConfig, VerificationConfig
from codec_fixtures.pipeline import FixtureGenerator, GenerationReport
from codec_fixtures.verify import VerificationResult, verify_manifest

logger = logging.getLogger("codec_fixtures.cli")


def parse_formats(values: Optional[List[str]]) -> Optional[tuple]:
    """Accept '--formats flac mp3' as well as '--formats flac,mp3'."""
    if not values:
        return None
    names = [name for value in values for name in value.split(',') if name.strip()]
    try:
        return tuple(ContainerFormat.parse(name) for name in names)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def print_generation_summary(report: GenerationReport) -> None:
    print("\n" + "=" * 60)
    print("GENERATION SUMMARY")
    print("=" * 60)
    for line in report.summary_lines():
        print(line)


def print_verification_summary(results: List[VerificationResult]) -> None:
    print("\n" + "=" * 60)
    print("VERIFICATION SUMMARY")
    print("=" * 60)
    for result in results:
        status = "PASS" if result.passed else "FAIL"
        line = f"{status}  {result.fixture_id}"
        if not result.passed:
            line += f" [{result.error_kind}]: {result.failure_detail}"
        print(line)
    passed = sum(1 for r in results if r.passed)
    print(f"\n{passed}/{len(results)} fixture(s) passed")


def verification_exit_code(results: List[VerificationResult]) -> int:
    kinds = {r.error_kind for r in results if not r.passed}
    if not kinds:
        return config.EXIT_OK
    if kinds == {'ManifestDrift'}:
        return config.EXIT_DRIFT
    if kinds == {'MissingTool'}:
        return config.EXIT_MISSING_TOOL
    return config.EXIT_FAILURE


def run_verification(args, target_dir: Path, formats) -> int:
    path = manifest_path(target_dir)
    try:
        manifest = load_manifest(path)
    except FileNotFoundError:
        print(f"ERROR: No manifest at {path}", file=sys.stderr)
        return config.EXIT_FAILURE
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return config.EXIT_FAILURE

    params = VerificationConfig(
        target_dir=target_dir,
        decoder=args.decoder,
        max_workers=args.jobs,
        tool_timeout_sec=args.timeout,
        ffmpeg=args.ffmpeg,
        ffprobe=args.ffprobe,
        formats=formats,
    )
    results = verify_manifest(manifest, params)
    print_verification_summary(results)

    if args.json:
        with open(args.json, 'w', encoding='utf-8') as f:
            json.dump([r.to_dict() for r in results], f, indent=2, ensure_ascii=False,
                      cls=ManifestEncoder)
        print(f"Results written to: {args.json}")

    return verification_exit_code(results)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='codec-fixtures - Deterministic audio codec fixtures',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Regenerate the full corpus
  %(prog)s fixtures/samples

  # Regenerate only FLAC and MP3 fixtures, overwriting drifted files
  %(prog)s fixtures/samples --formats flac mp3 --force

  # Check the matrix and installed encoders without writing anything
  %(prog)s fixtures/samples --dry-run

  # Regenerate, then verify every fixture with the ffmpeg decoder
  %(prog)s fixtures/samples --verify --decoder ffmpeg --json results.json

Exit codes:
  0 success, 1 encoding/verification failure, 2 usage error,
  3 missing encoding capability, 4 manifest drift
        """
    )

    parser.add_argument('target', type=str, help='Directory receiving fixtures and manifest')

    parser.add_argument(
        '--formats',
        nargs='+',
        metavar='FORMAT',
        help=f"Only regenerate these formats ({', '.join(f.value for f in ContainerFormat)})"
    )

    parser.add_argument(
        '--force',
        action='store_true',
        help='Regenerate even if fixtures on disk differ from the manifest'
    )

    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Validate the fixture matrix and required encoders without writing files'
    )

    parser.add_argument(
        '--jobs', '-j',
        type=int,
        default=config.MAX_WORKERS,
        help=f'Parallel workers (default: {config.MAX_WORKERS})'
    )

    parser.add_argument(
        '--timeout',
        type=float,
        default=config.ENCODER_TIMEOUT_SEC,
        help=f'Seconds allowed per encoder/decoder call (default: {config.ENCODER_TIMEOUT_SEC:g})'
    )

    parser.add_argument(
        '--ffmpeg',
        default=config.FFMPEG_BINARY,
        help=f'ffmpeg executable (default: {config.FFMPEG_BINARY})'
    )

    parser.add_argument(
        '--ffprobe',
        default=config.FFPROBE_BINARY,
        help=f'ffprobe executable (default: {config.FFPROBE_BINARY})'
    )

    parser.add_argument(
        '--verify',
        action='store_true',
        help='Verify the fixtures against the manifest after generation'
    )

    parser.add_argument(
        '--decoder',
        choices=DECODER_NAMES,
        default='auto',
        help='Decoder under test for --verify (default: auto)'
    )

    parser.add_argument(
        '--json',
        type=str,
        help='Write verification results to this JSON file'
    )

    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Print debug logging'
    )

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    try:
        formats = parse_formats(args.formats)
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))
    if args.jobs < 1:
        parser.error("--jobs must be at least 1")
    if args.timeout <= 0:
        parser.error("--timeout must be positive")
    if (args.decoder != 'auto' or args.json) and not args.verify:
        parser.error("--decoder and --json require --verify")

    target_dir = Path(args.target)
    params = GenerationConfig(
        target_dir=target_dir,
        formats=formats,
        force=args.force,
        dry_run=args.dry_run,
        max_workers=args.jobs,
        encoder_timeout_sec=args.timeout,
        ffmpeg=args.ffmpeg,
        ffprobe=args.ffprobe,
    )

    try:
        report = FixtureGenerator(params).run()
    except UnsupportedParameterCombination as e:
        print(f"ERROR: Invalid fixture matrix: {e}", file=sys.stderr)
        return config.EXIT_FAILURE
    except ManifestDrift as e:
        print(f"ERROR: {e}", file=sys.stderr)
        print("Use --force to regenerate anyway.", file=sys.stderr)
        return config.EXIT_DRIFT
    except ValueError as e:
        # Unreadable manifest without --force
        print(f"ERROR: {e}", file=sys.stderr)
        print("Use --force to replace it.", file=sys.stderr)
        return config.EXIT_FAILURE

    print_generation_summary(report)
    exit_code = report.exit_code

    if args.verify and not args.dry_run and exit_code != config.EXIT_FAILURE:
        verify_code = run_verification(args, target_dir, formats)
        if verify_code != config.EXIT_OK:
            exit_code = verify_code

    return exit_code


if __name__ == '__main__':
    sys.exit(main())
