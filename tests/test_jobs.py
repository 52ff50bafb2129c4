"""Tests for job events and the job registry."""

from suboverlay.jobs import DoneEvent, DownloadJob, ErrorEvent, JobRegistry, LogEvent, ProgressEvent


class TestEventPayloads:
    """Tests for JobEvent.to_payload."""

    def test_progress(self):
        payload = ProgressEvent('job_1', percent=42.5, speed='1.2MiB/s', eta='00:05').to_payload()
        assert payload == {'jobId': 'job_1', 'type': 'progress', 'percent': 42.5, 'speed': '1.2MiB/s', 'eta': '00:05'}

    def test_log_and_error(self):
        assert LogEvent('job_1', stream='stderr', line='oops').to_payload() == {
            'jobId': 'job_1', 'type': 'log', 'stream': 'stderr', 'line': 'oops'}
        assert ErrorEvent('job_1', message='failed').to_payload() == {
            'jobId': 'job_1', 'type': 'error', 'message': 'failed'}

    def test_done_carries_entry(self):
        entry = {'id': 'abc#video', 'videoFilename': 'foo.mp4', 'hasVideo': True}
        payload = DoneEvent('job_1', filename='foo.mp4', entry=entry, mode='audio').to_payload()
        assert payload['type'] == 'done'
        assert payload['filename'] == 'foo.mp4'
        assert payload['entry'] == entry
        assert payload['mode'] == 'audio'
        assert 'job_id' not in payload


class TestJobRegistry:

    def test_ids_are_unique(self):
        registry = JobRegistry()
        ids = {registry.new_job_id() for _ in range(50)}
        assert len(ids) == 50
        assert all(job_id.startswith('job_') for job_id in ids)

    def test_add_get_remove(self):
        registry = JobRegistry()
        job = DownloadJob('job_1', 'https://example.com/v')
        registry.add(job)

        assert 'job_1' in registry
        assert registry.get('job_1') is job
        assert registry.active_ids() == ['job_1']
        assert registry.remove('job_1') is job
        assert registry.remove('job_1') is None
        assert len(registry) == 0
