"""
Generation Pipeline Test Suite

Runs the full pipeline with libsndfile for lossless formats and in-process
stand-ins for the ffmpeg-backed encoder and tag injector.

Verifies:
- Collect-all-then-commit: one failure never aborts siblings, and the
  manifest is only written when every fixture succeeded
- Invalid matrices are rejected before any encoder runs
- Missing capabilities are reported once per format family; a missing tag
  writer only skips the tagged fixtures
- A failed commit restores the previous fixtures and manifest
- Regeneration idempotence (byte-identical manifests)
- Drift protection, format filtering, dry run and cancellation
"""

import json
import os
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import config
from codec_fixtures import pipeline
from codec_fixtures.encoders import CodecEncoder
from codec_fixtures.errors import (
    EncodingFailed,
    ManifestDrift,
    TagRoundTripMismatch,
    UnsupportedParameterCombination,
)
from codec_fixtures.fixture_spec import (
    ARTWORK_METADATA,
    NO_METADATA,
    UNICODE_METADATA,
    Artwork,
    FixtureMatrix,
    FormatVariant,
    SignalVariant,
)
from codec_fixtures.formats import ContainerFormat
from codec_fixtures.manifest import check_drift, compute_checksum, load_manifest, manifest_path
from codec_fixtures.metadata import MetadataInjector
from codec_fixtures.params import GenerationConfig
from codec_fixtures.pipeline import BACKUP_DIRNAME, FixtureGenerator, FixtureOutcome, FixtureState
from codec_fixtures.signals import ReferenceSignal, WaveformKind, to_pcm_bytes

SINE = SignalVariant('sine', ReferenceSignal(WaveformKind.SINE, 1000.0, duration_seconds=0.1))
SILENCE = SignalVariant('silence', ReferenceSignal(WaveformKind.SILENCE, duration_seconds=0.05))

TEST_MATRICES = (
    FixtureMatrix(
        name='lossless',
        formats=(FormatVariant(ContainerFormat.WAV), FormatVariant(ContainerFormat.FLAC)),
        signals=(SINE, SILENCE),
    ),
    FixtureMatrix(
        name='lossy',
        formats=(FormatVariant(ContainerFormat.MP3),),
        signals=(SINE,),
        metadata_sets=(NO_METADATA, UNICODE_METADATA),
    ),
)

ALL_IDS = ['sine.wav', 'silence.wav', 'sine.flac', 'silence.flac', 'sine.mp3', 'sine_unicode.mp3']


class FakeEncoder(CodecEncoder):
    """In-process stand-in for an ffmpeg encoder."""

    def __init__(self, fmt, available=True, fail=False, salt=b""):
        super().__init__(fmt)
        self.available = available
        self.fail = fail
        self.salt = salt
        self.calls = []

    def is_available(self):
        return self.available

    def describe_requirement(self):
        return f"fake:{self.format.value}"

    def _encode_to_path(self, signal, pcm, codec_params, output_path, cancel_event):
        self.calls.append(signal)
        if self.fail:
            raise EncodingFailed("encoder reported an error")
        params = json.dumps(codec_params, sort_keys=True).encode()
        output_path.write_bytes(b"FAKE" + self.salt + params + to_pcm_bytes(pcm, signal.bit_depth)[:256])


class FakeInjector(MetadataInjector):
    """Appends tags to the payload instead of rewriting a container."""

    def __init__(self, mismatch=False, available=True):
        super().__init__(ffmpeg='fake-ffmpeg', ffprobe='fake-ffprobe')
        self.mismatch = mismatch
        self.available = available
        self.artworks = []

    def is_available(self):
        return self.available

    def apply_verified(self, data, fmt, tags, artwork=None, cancel_event=None, fixture_id=None):
        if not tags and artwork is None:
            return data
        if self.mismatch:
            raise TagRoundTripMismatch("tag round-trip mismatch", expected=dict(tags),
                                       actual={}, fixture_id=fixture_id)
        payload = dict(tags)
        if artwork is not None:
            self.artworks.append(artwork)
            payload['artwork'] = artwork.describe()
        return data + json.dumps(payload, ensure_ascii=False, sort_keys=True).encode('utf-8')


def fixed_clock(hour=12):
    return lambda: datetime(2026, 1, 1, hour, 0, 0, tzinfo=timezone.utc)


def make_generator(target, mp3=None, injector=None, clock=None, matrices=TEST_MATRICES, **params):
    return FixtureGenerator(
        GenerationConfig(target_dir=target, max_workers=2, **params),
        encoders={ContainerFormat.MP3: mp3 or FakeEncoder(ContainerFormat.MP3)},
        injector=injector or FakeInjector(),
        clock=clock or fixed_clock(),
        matrices=matrices,
    )


def staging_dirs(target: Path):
    return [p for p in target.iterdir() if p.name.startswith(config.STAGING_PREFIX)]


# =============================================================================
# SUCCESSFUL RUN TESTS
# =============================================================================

class TestGeneration:
    """Full runs that succeed."""

    def test_writes_fixtures_and_manifest(self, tmp_path):
        report = make_generator(tmp_path).run()

        assert report.exit_code == config.EXIT_OK
        assert report.committed
        assert all(o.state is FixtureState.MANIFEST_RECORDED for o in report.outcomes)

        manifest = load_manifest(manifest_path(tmp_path))
        assert [e.spec.id for e in manifest.entries] == ALL_IDS
        for entry in manifest.entries:
            path = tmp_path / entry.spec.output_path
            assert compute_checksum(path) == entry.content_checksum
            assert path.stat().st_size == entry.file_size
        assert staging_dirs(tmp_path) == []

    def test_manifest_records_params_and_tags(self, tmp_path):
        make_generator(tmp_path).run()
        entry = load_manifest(manifest_path(tmp_path)).get('sine_unicode.mp3')
        assert entry.spec.params_dict == {'q:a': '2'}
        assert entry.spec.tags_dict['title'] == 'テストソング'
        assert entry.generated_at == '2026-01-01T12:00:00Z'

    def test_regeneration_is_byte_identical(self, tmp_path):
        make_generator(tmp_path).run()
        first = manifest_path(tmp_path).read_bytes()
        make_generator(tmp_path).run()
        assert manifest_path(tmp_path).read_bytes() == first

    def test_regeneration_differs_only_in_timestamps(self, tmp_path):
        make_generator(tmp_path, clock=fixed_clock(12)).run()
        first = json.loads(manifest_path(tmp_path).read_text(encoding='utf-8'))
        make_generator(tmp_path, clock=fixed_clock(13)).run()
        second = json.loads(manifest_path(tmp_path).read_text(encoding='utf-8'))

        assert first['generated_at'] != second['generated_at']
        for doc in (first, second):
            doc.pop('generated_at')
            for record in doc['fixtures']:
                record.pop('generated_at')
        assert first == second

    def test_format_filter_carries_over_other_entries(self, tmp_path):
        make_generator(tmp_path, clock=fixed_clock(12)).run()
        report = make_generator(tmp_path, clock=fixed_clock(13),
                                formats=(ContainerFormat.FLAC,)).run()

        assert [o.spec.id for o in report.outcomes] == ['sine.flac', 'silence.flac']
        manifest = load_manifest(manifest_path(tmp_path))
        assert [e.spec.id for e in manifest.entries] == ALL_IDS
        stamps = {e.spec.id: e.generated_at for e in manifest.entries}
        assert stamps['sine.flac'] == '2026-01-01T13:00:00Z'
        assert stamps['sine.wav'] == '2026-01-01T12:00:00Z'

    def test_artwork_reaches_injector_and_manifest(self, tmp_path):
        matrices = (FixtureMatrix('art', formats=(FormatVariant(ContainerFormat.FLAC),),
                                  signals=(SINE,), metadata_sets=(ARTWORK_METADATA,)),)
        injector = FakeInjector()
        report = make_generator(tmp_path, injector=injector, matrices=matrices).run()

        assert report.exit_code == config.EXIT_OK
        assert injector.artworks == [Artwork()]
        entry = load_manifest(manifest_path(tmp_path)).get('sine_artwork.flac')
        assert entry.spec.artwork == Artwork()
        assert entry.spec.tags_dict['title'] == 'Artwork Test'


# =============================================================================
# VALIDATION AND CAPABILITY TESTS
# =============================================================================

class TestPreconditions:
    """Checks that happen before any file is written."""

    def test_invalid_matrix_rejected_before_encoding(self, tmp_path):
        """Opus at 44.1 kHz must fail at planning, with no encoder invoked."""
        opus = FakeEncoder(ContainerFormat.OPUS)
        broken = (FixtureMatrix('opus', formats=(FormatVariant(ContainerFormat.OPUS),),
                                signals=(SINE,)),)
        target = tmp_path / "out"
        generator = FixtureGenerator(
            GenerationConfig(target_dir=target),
            encoders={ContainerFormat.OPUS: opus},
            injector=FakeInjector(),
            matrices=broken,
        )
        with pytest.raises(UnsupportedParameterCombination) as excinfo:
            generator.run()
        assert excinfo.value.field == 'sample_rate_hz'
        assert opus.calls == []
        assert not target.exists()

    def test_missing_tool_reported_once(self, tmp_path, caplog):
        mp3 = FakeEncoder(ContainerFormat.MP3, available=False)
        with caplog.at_level('WARNING', logger='codec_fixtures.pipeline'):
            report = make_generator(tmp_path, mp3=mp3).run()

        assert list(report.skipped_families) == ['mp3']
        assert [o.spec.id for o in report.skipped] == ['sine.mp3', 'sine_unicode.mp3']
        assert sum('Skipping mp3' in r.getMessage() for r in caplog.records) == 1
        assert report.exit_code == config.EXIT_MISSING_TOOL
        assert mp3.calls == []

        manifest = load_manifest(manifest_path(tmp_path))
        assert [e.spec.id for e in manifest.entries] == ALL_IDS[:4]

    def test_missing_tagger_skips_only_tagged_fixtures(self, tmp_path, caplog):
        with caplog.at_level('WARNING', logger='codec_fixtures.pipeline'):
            report = make_generator(tmp_path, injector=FakeInjector(available=False)).run()

        assert report.skipped_families == {}
        assert list(report.skipped_tagging) == ['mp3']
        assert [o.spec.id for o in report.skipped] == ['sine_unicode.mp3']
        assert sum('Skipping tagged mp3' in r.getMessage() for r in caplog.records) == 1
        assert report.committed
        assert report.exit_code == config.EXIT_MISSING_TOOL
        assert 'mp3 (tagged fixtures only)' in "\n".join(report.summary_lines())

        manifest = load_manifest(manifest_path(tmp_path))
        assert [e.spec.id for e in manifest.entries] == ALL_IDS[:5]
        assert (tmp_path / 'sine.mp3').exists()

    def test_tagger_not_checked_without_tagged_fixtures(self, tmp_path):
        report = make_generator(tmp_path, injector=FakeInjector(available=False),
                                formats=(ContainerFormat.WAV,)).run()
        assert report.skipped_tagging == {}
        assert report.exit_code == config.EXIT_OK

    def test_dry_run_writes_nothing(self, tmp_path):
        mp3 = FakeEncoder(ContainerFormat.MP3)
        target = tmp_path / "out"
        report = make_generator(target, mp3=mp3, dry_run=True).run()

        assert report.dry_run
        assert report.exit_code == config.EXIT_OK
        assert all(o.state is FixtureState.PENDING for o in report.outcomes)
        assert mp3.calls == []
        assert not target.exists()

    def test_drift_blocks_regeneration(self, tmp_path):
        make_generator(tmp_path).run()
        fixture = tmp_path / 'sine.wav'
        original = compute_checksum(fixture)
        fixture.write_bytes(fixture.read_bytes() + b"\x00")

        with pytest.raises(ManifestDrift) as excinfo:
            make_generator(tmp_path).run()
        assert [r.fixture_id for r in excinfo.value.records] == ['sine.wav']

        report = make_generator(tmp_path, force=True).run()
        assert report.exit_code == config.EXIT_OK
        assert compute_checksum(fixture) == original


# =============================================================================
# FAILURE ISOLATION TESTS
# =============================================================================

class TestFailureIsolation:
    """Per-fixture failures are collected; nothing is committed."""

    def test_encoder_failure_isolated(self, tmp_path):
        report = make_generator(tmp_path, mp3=FakeEncoder(ContainerFormat.MP3, fail=True)).run()

        assert report.exit_code == config.EXIT_FAILURE
        assert not report.committed
        assert sorted(o.spec.id for o in report.failed) == ['sine.mp3', 'sine_unicode.mp3']
        for outcome in report.failed:
            assert outcome.error_kind == 'EncodingFailed'
            assert outcome.failed_in is FixtureState.ENCODING

        lossless = [o for o in report.outcomes if o.spec.container_format.lossless]
        assert all(o.succeeded for o in lossless)
        assert not manifest_path(tmp_path).exists()
        assert not (tmp_path / 'sine.wav').exists()
        assert staging_dirs(tmp_path) == []

    def test_failed_run_keeps_previous_manifest(self, tmp_path):
        make_generator(tmp_path).run()
        before = manifest_path(tmp_path).read_bytes()

        report = make_generator(tmp_path, mp3=FakeEncoder(ContainerFormat.MP3, fail=True),
                                clock=fixed_clock(18)).run()
        assert report.failed
        assert manifest_path(tmp_path).read_bytes() == before

    def test_tag_mismatch_is_fatal_to_fixture(self, tmp_path):
        report = make_generator(tmp_path, injector=FakeInjector(mismatch=True)).run()
        assert [o.spec.id for o in report.failed] == ['sine_unicode.mp3']
        outcome = report.failed[0]
        assert outcome.error_kind == 'TagRoundTripMismatch'
        assert outcome.failed_in is FixtureState.TAGGING
        assert outcome.error.fixture_id == 'sine_unicode.mp3'

    def test_summary_lines(self, tmp_path):
        report = make_generator(tmp_path, mp3=FakeEncoder(ContainerFormat.MP3, fail=True)).run()
        text = "\n".join(report.summary_lines())
        assert 'FAIL  sine.mp3' in text
        assert 'manifest not written' in text


# =============================================================================
# COMMIT ROLLBACK TESTS
# =============================================================================

def disk_full(manifest, path):
    raise OSError("disk full")


class TestCommitRollback:
    """A commit that fails part-way leaves the previous corpus consistent."""

    def regenerate(self, tmp_path):
        return make_generator(tmp_path, mp3=FakeEncoder(ContainerFormat.MP3, salt=b"v2"),
                              clock=fixed_clock(13)).run()

    def test_manifest_write_failure_restores_fixtures(self, tmp_path, monkeypatch):
        make_generator(tmp_path).run()
        old_manifest = load_manifest(manifest_path(tmp_path))
        before = manifest_path(tmp_path).read_bytes()
        old_mp3 = (tmp_path / 'sine.mp3').read_bytes()

        monkeypatch.setattr(pipeline, 'write_manifest', disk_full)
        report = self.regenerate(tmp_path)

        assert not report.committed
        assert report.exit_code == config.EXIT_FAILURE
        assert 'disk full' in str(report.commit_error)
        assert report.unrestored == []
        assert manifest_path(tmp_path).read_bytes() == before
        assert (tmp_path / 'sine.mp3').read_bytes() == old_mp3
        check_drift(old_manifest, tmp_path)
        assert staging_dirs(tmp_path) == []
        assert not any(o.state is FixtureState.MANIFEST_RECORDED for o in report.outcomes)
        assert 'previous fixtures and manifest restored' in "\n".join(report.summary_lines())

    def test_failed_move_undoes_earlier_moves(self, tmp_path, monkeypatch):
        make_generator(tmp_path).run()
        old_manifest = load_manifest(manifest_path(tmp_path))
        old_mp3 = (tmp_path / 'sine.mp3').read_bytes()
        real_replace = os.replace

        def busy_on_last_fixture(src, dst):
            src = Path(src)
            if src.name == 'sine_unicode.mp3' and src.parent.name.startswith(config.STAGING_PREFIX):
                raise OSError("device busy")
            return real_replace(src, dst)

        monkeypatch.setattr(pipeline.os, 'replace', busy_on_last_fixture)
        report = self.regenerate(tmp_path)

        assert 'device busy' in str(report.commit_error)
        assert report.exit_code == config.EXIT_FAILURE
        assert (tmp_path / 'sine.mp3').read_bytes() == old_mp3
        check_drift(old_manifest, tmp_path)
        assert staging_dirs(tmp_path) == []

    def test_failed_first_commit_leaves_nothing(self, tmp_path, monkeypatch):
        monkeypatch.setattr(pipeline, 'write_manifest', disk_full)
        report = make_generator(tmp_path).run()

        assert report.commit_error is not None
        assert list(tmp_path.iterdir()) == []

    def test_unrestorable_backups_are_kept(self, tmp_path, monkeypatch):
        make_generator(tmp_path).run()
        real_replace = os.replace

        def no_restore(src, dst):
            if BACKUP_DIRNAME in Path(src).parts:
                raise OSError("read-only")
            return real_replace(src, dst)

        monkeypatch.setattr(pipeline, 'write_manifest', disk_full)
        monkeypatch.setattr(pipeline.os, 'replace', no_restore)
        report = self.regenerate(tmp_path)

        assert len(report.unrestored) == len(ALL_IDS)
        assert 'could not be restored' in "\n".join(report.summary_lines())
        [staging] = staging_dirs(tmp_path)
        assert (staging / BACKUP_DIRNAME / 'sine.mp3').exists()


# =============================================================================
# CANCELLATION AND STATE MACHINE TESTS
# =============================================================================

class TestCancellation:
    """An aborted run leaves no visible partial output."""

    def test_cancel_before_run(self, tmp_path):
        generator = make_generator(tmp_path)
        generator.cancel()
        report = generator.run()

        assert report.cancelled
        assert report.exit_code == config.EXIT_FAILURE
        assert all(o.error_kind == 'GenerationCancelled' for o in report.outcomes)
        assert not manifest_path(tmp_path).exists()
        assert staging_dirs(tmp_path) == []

    def test_cancel_during_encode(self, tmp_path):
        started = threading.Event()

        class BlockingEncoder(FakeEncoder):
            def _encode_to_path(self, signal, pcm, codec_params, output_path, cancel_event):
                started.set()
                cancel_event.wait(timeout=10)
                super()._encode_to_path(signal, pcm, codec_params, output_path, cancel_event)

        generator = make_generator(tmp_path, mp3=BlockingEncoder(ContainerFormat.MP3))
        canceller = threading.Thread(target=lambda: started.wait(10) and generator.cancel())
        canceller.start()
        report = generator.run()
        canceller.join()

        assert report.cancelled
        assert not manifest_path(tmp_path).exists()
        assert [p.name for p in tmp_path.iterdir()] == []


class TestStateMachine:
    """Transitions follow PENDING -> ... -> MANIFEST_RECORDED or FAILED."""

    def make_outcome(self):
        return FixtureOutcome(make_generator(Path('unused')).plan()[0])

    def test_illegal_transition(self):
        outcome = self.make_outcome()
        with pytest.raises(RuntimeError):
            outcome.advance(FixtureState.TAGGING)

    def test_cannot_fail_from_pending(self):
        with pytest.raises(RuntimeError):
            self.make_outcome().fail(EncodingFailed("x"))

    def test_failed_is_terminal(self):
        outcome = self.make_outcome()
        outcome.advance(FixtureState.SYNTHESIZING)
        outcome.fail(EncodingFailed("x"))
        assert outcome.failed_in is FixtureState.SYNTHESIZING
        with pytest.raises(RuntimeError):
            outcome.advance(FixtureState.ENCODING)
