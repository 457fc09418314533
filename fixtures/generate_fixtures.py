#!/usr/bin/env python3
"""Regenerate the committed codec fixture corpus.

Writes every fixture of the default matrices into fixtures/samples/ together
with fixtures_manifest.json (SHA-256 per file). Formats whose encoder is not
installed are skipped and reported once.

Usage:
    python fixtures/generate_fixtures.py [--force]
"""

import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import config  # noqa: E402
from codec_fixtures.errors import ManifestDrift  # noqa: E402
from codec_fixtures.params import GenerationConfig  # noqa: E402
from codec_fixtures.pipeline import FixtureGenerator  # noqa: E402

OUTPUT_DIR = Path(__file__).parent / "samples"


def main():
    logging.basicConfig(level=logging.INFO, format='%(levelname)s %(name)s: %(message)s')
    force = '--force' in sys.argv[1:]

    generator = FixtureGenerator(GenerationConfig(target_dir=OUTPUT_DIR, force=force))
    try:
        report = generator.run()
    except ManifestDrift as e:
        print(f"ERROR: {e}\nRe-run with --force to overwrite.", file=sys.stderr)
        sys.exit(config.EXIT_DRIFT)

    for outcome in report.recorded:
        print(f"{outcome.spec.id}: {outcome.content_checksum}")
    for line in report.summary_lines():
        print(line)

    sys.exit(report.exit_code)


if __name__ == "__main__":
    main()
