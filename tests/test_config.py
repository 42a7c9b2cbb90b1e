"""
Tests for configuration loading
"""

import pytest
import yaml

from docjobs.config import DocJobsConfig


class TestDocJobsConfig:

    def test_defaults(self):
        config = DocJobsConfig()
        assert config.get('database.type') == 'sqlite'
        assert config.get('queue.max_attempts') == 3
        assert config.get('rate_limit.processing.limit') == 30
        assert config.get('missing.key', 'fallback') == 'fallback'

    def test_overrides_are_merged(self):
        config = DocJobsConfig.from_dict({'queue': {'max_attempts': 5}})
        assert config.get('queue.max_attempts') == 5
        assert config.get('queue.lease_seconds') == 300

    def test_set(self):
        config = DocJobsConfig()
        config.set('storage.s3.bucket', 'docs')
        config.set('custom.nested.value', 1)
        assert config.get('storage.s3.bucket') == 'docs'
        assert config.get('custom.nested.value') == 1

    def test_save_and_load(self, tmp_path):
        config = DocJobsConfig.from_dict({'pool': {'mode': 'thread'}})
        path = config.save(tmp_path / 'config.yaml')

        loaded = DocJobsConfig.from_file(str(path))
        assert loaded.get('pool.mode') == 'thread'
        assert loaded.config_file == path

    def test_invalid_values(self):
        with pytest.raises(RuntimeError):
            DocJobsConfig.from_dict({'storage': {'type': 'ftp'}})
        with pytest.raises(RuntimeError):
            DocJobsConfig.from_dict({'queue': {'max_attempts': 0}})
        with pytest.raises(RuntimeError):
            DocJobsConfig.from_dict({'pool': {'mode': 'greenlet'}})

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / 'broken.yaml'
        path.write_text('database: [unclosed')
        with pytest.raises(yaml.YAMLError):
            DocJobsConfig.from_file(str(path))

    def test_storage_config_is_flattened(self):
        config = DocJobsConfig.from_dict({'storage': {'type': 's3', 's3': {'bucket': 'docs'}}})
        storage_config = config.get_storage_config()
        assert storage_config['type'] == 's3'
        assert storage_config['bucket'] == 'docs'

    def test_cache_config(self):
        config = DocJobsConfig.from_dict({'cache': {'type': 'redis', 'redis': {'url': 'redis://cache:6379/1'}}})
        assert config.get_cache_config() == {'type': 'redis', 'url': 'redis://cache:6379/1', 'socket_timeout': 5}

    def test_user_file_from_environment(self, tmp_path, monkeypatch):
        path = tmp_path / 'user.yaml'
        path.write_text(yaml.safe_dump({'worker': {'max_concurrent': 9}}))
        monkeypatch.setenv('DOCJOBS_CONFIG', str(path))

        DocJobsConfig.reset_instance()
        try:
            assert DocJobsConfig.instance().get('worker.max_concurrent') == 9
            assert DocJobsConfig.instance() is DocJobsConfig.instance()
        finally:
            DocJobsConfig.reset_instance()

    def test_get_all_is_a_copy(self):
        config = DocJobsConfig()
        snapshot = config.get_all()
        snapshot['queue']['max_attempts'] = 99
        assert config.get('queue.max_attempts') == 3
