#!/usr/bin/env python3
"""
Tests for the ArchivePipeline

Covers the synchronous archive rules (active date, missing, hidden, empty,
invalid), zip contents, idempotence, zip failures and the worker threads.
"""

import os
import sys
import threading
import zipfile
from pathlib import Path

import pytest

src_path = str(Path(__file__).parent.parent / 'src')
if src_path not in sys.path:
    sys.path.insert(0, src_path)

from stat_recorder.archive_pipeline import ArchivePipeline, ArchiveStatus
from stat_recorder.dates import ActiveDate


@pytest.fixture
def day_dir(tmp_path):
    """A populated day directory with hidden and empty members"""
    day = tmp_path / '20240101'
    day.mkdir()
    (day / 'metricA.csv').write_bytes(b'v1\r\nv2\r\n')
    (day / 'metricB.csv').write_bytes(b'x\r\n')
    (day / '.hidden.csv').write_bytes(b'secret\r\n')
    (day / '.cache').mkdir()
    (day / '.cache' / 'inner.csv').write_bytes(b'no\r\n')
    (day / 'empty_sub').mkdir()
    return day


@pytest.fixture
def pipeline(tmp_path):
    return ArchivePipeline(tmp_path, ActiveDate('20240102'), num_workers=2)


class TestArchiveRules:

    def test_active_date_rejected(self, tmp_path, pipeline):
        (tmp_path / '20240102').mkdir()
        (tmp_path / '20240102' / 'm.csv').write_text('v\r\n')

        result = pipeline.archive('20240102')

        assert result.status is ArchiveStatus.ACTIVE_DATE
        assert result.message == 'cannot archive active date'
        assert not (tmp_path / '20240102.zip').exists()

    def test_missing_directory(self, pipeline):
        result = pipeline.archive('19990101')
        assert result.status is ArchiveStatus.NOT_FOUND
        assert result.message == 'not found'

    def test_hidden_directory(self, tmp_path, pipeline):
        (tmp_path / '.20240101').mkdir()
        (tmp_path / '.20240101' / 'm.csv').write_text('v')
        result = pipeline.archive('.20240101')
        assert result.status is ArchiveStatus.HIDDEN
        assert result.message == 'hidden, skipped'

    def test_empty_directory_writes_no_zip(self, tmp_path, pipeline):
        (tmp_path / 'empty_label').mkdir()

        result = pipeline.archive('empty_label')

        assert result.status is ArchiveStatus.EMPTY
        assert result.message == 'empty, skipped'
        assert not (tmp_path / 'empty_label.zip').exists()

    def test_only_hidden_entries_counts_as_empty(self, tmp_path, pipeline):
        (tmp_path / '20231231').mkdir()
        (tmp_path / '20231231' / '.DS_Store').write_text('x')
        assert pipeline.archive('20231231').status is ArchiveStatus.EMPTY

    @pytest.mark.parametrize('label', ['', '..', '.', '../20240101', 'a/b'])
    def test_invalid_label(self, pipeline, label):
        assert pipeline.archive(label).status is ArchiveStatus.INVALID

    def test_settled_statuses(self):
        assert ArchiveStatus.SUCCESS.settled
        assert ArchiveStatus.EMPTY.settled
        assert ArchiveStatus.NOT_FOUND.settled
        assert not ArchiveStatus.FAILED.settled
        assert not ArchiveStatus.ACTIVE_DATE.settled


class TestZipContents:

    def test_zip_layout(self, tmp_path, day_dir, pipeline):
        result = pipeline.archive('20240101')

        assert result.ok
        assert result.message == 'zip success'
        with zipfile.ZipFile(tmp_path / '20240101.zip') as zf:
            names = set(zf.namelist())
            assert names == {
                '20240101/',
                '20240101/empty_sub/',
                '20240101/metricA.csv',
                '20240101/metricB.csv',
            }
            assert zf.read('20240101/metricA.csv') == b'v1\r\nv2\r\n'
        assert result.entries == 4

    def test_rearchive_is_idempotent(self, tmp_path, day_dir, pipeline):
        first = pipeline.archive('20240101')
        with zipfile.ZipFile(tmp_path / '20240101.zip') as zf:
            first_entries = {i.filename: (i.CRC, i.file_size) for i in zf.infolist()}

        second = pipeline.archive('20240101')
        with zipfile.ZipFile(tmp_path / '20240101.zip') as zf:
            second_entries = {i.filename: (i.CRC, i.file_size) for i in zf.infolist()}

        assert first.ok and second.ok
        assert first_entries == second_entries
        assert not (tmp_path / '20240101.zip.part').exists()

    def test_io_failure_reports_error(self, tmp_path, day_dir, pipeline, monkeypatch):
        import stat_recorder.archive_pipeline as module

        def broken_zip(source, target):
            raise OSError("Input/output error")

        monkeypatch.setattr(module, 'zip_folder', broken_zip)

        result = pipeline.archive('20240101')

        assert result.status is ArchiveStatus.FAILED
        assert result.message.startswith('zip file error!')
        assert 'Input/output error' in result.message
        assert pipeline.archives_failed == 1

    def test_pre_1980_timestamp_reports_error(self, tmp_path, day_dir, pipeline):
        os.utime(day_dir / 'metricA.csv', (0, 0))

        result = pipeline.archive('20240101')

        assert result.status is ArchiveStatus.FAILED
        assert result.message.startswith('zip file error!')
        assert pipeline.archives_failed == 1
        assert not (tmp_path / '20240101.zip').exists()
        assert not (tmp_path / '20240101.zip.part').exists()

    def test_linked_directory_not_followed(self, tmp_path, day_dir, pipeline):
        os.symlink(day_dir, day_dir / 'loop')

        result = pipeline.archive('20240101')

        assert result.ok
        with zipfile.ZipFile(tmp_path / '20240101.zip') as zf:
            assert not any(name.startswith('20240101/loop') for name in zf.namelist())


class TestWorkers:

    def test_submit_runs_callback(self, tmp_path, day_dir, pipeline):
        done = threading.Event()
        results = []

        def on_done(result):
            results.append(result)
            done.set()

        pipeline.start()
        try:
            assert pipeline.submit('20240101', on_done)
            assert done.wait(5.0)
        finally:
            pipeline.stop()

        assert results[0].ok
        assert (tmp_path / '20240101.zip').exists()

    def test_submit_refuses_label_already_scheduled(self, tmp_path, day_dir, pipeline):
        release = threading.Event()
        finished = threading.Event()

        pipeline.start()
        try:
            assert pipeline.submit('20240101', lambda r: release.wait(5.0))
            assert pipeline.is_scheduled('20240101')
            assert not pipeline.submit('20240101')
            release.set()
            pipeline.submit('19990101', lambda r: finished.set())
            assert finished.wait(5.0)
        finally:
            release.set()
            pipeline.stop()

    def test_submit_when_stopped(self, pipeline):
        assert not pipeline.submit('20240101')

    def test_worker_survives_callback_error(self, tmp_path, day_dir, pipeline):
        done = threading.Event()

        def bad_callback(result):
            raise RuntimeError("boom")

        pipeline.start()
        try:
            pipeline.submit('20240101', bad_callback)
            pipeline.submit('19990101', lambda r: done.set())
            assert done.wait(5.0)
        finally:
            pipeline.stop()
        assert not pipeline.is_scheduled('20240101')

    def test_unexpected_error_reaches_callback_as_failure(self, tmp_path, pipeline, monkeypatch):
        done = threading.Event()
        results = []

        def exploding_archive(label):
            raise RuntimeError("unexpected")

        def on_done(result):
            results.append(result)
            done.set()

        monkeypatch.setattr(pipeline, 'archive', exploding_archive)
        pipeline.start()
        try:
            pipeline.submit('20240101', on_done)
            assert done.wait(5.0)
        finally:
            pipeline.stop()

        assert results[0].status is ArchiveStatus.FAILED
        assert 'unexpected' in results[0].message
        assert pipeline.archives_failed == 1

    def test_stop_without_start_and_twice(self, pipeline):
        pipeline.stop()
        pipeline.start()
        pipeline.stop()
        pipeline.stop()
        assert not pipeline.running

    def test_counts_every_archive_across_workers(self, tmp_path, pipeline):
        labels = [f"202301{day:02d}" for day in range(1, 21)]
        for label in labels:
            (tmp_path / label).mkdir()
            (tmp_path / label / 'm.csv').write_bytes(b'v\r\n')

        finished = threading.Semaphore(0)
        pipeline.start()
        try:
            for label in labels:
                assert pipeline.submit(label, lambda r: finished.release())
            for _ in labels:
                assert finished.acquire(timeout=5.0)
        finally:
            pipeline.stop()

        assert pipeline.archives_completed == len(labels)
        assert pipeline.get_stats()['archives_failed'] == 0
