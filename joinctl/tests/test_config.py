import pytest
import yaml
from pydantic import ValidationError

from joinctl.modules.k3s.config import HandshakeConfig
from joinctl.modules.k3s.configure import create_config_file, show_config, validate_config_file


def test_defaults():
    config = HandshakeConfig()
    assert config.readiness.timeout == 300
    assert config.collector.interval == 5
    assert config.join.max_attempts == 3
    assert config.join.backoff == 30
    assert config.locks.timeout == 300
    assert config.channel.type == 'catalog'


def test_load_file_and_env_overrides(tmp_path, monkeypatch):
    path = tmp_path / 'config.yaml'
    path.write_text(yaml.safe_dump({'cluster': {'name': 'prod'}, 'readiness': {'timeout': 120}}))
    monkeypatch.setenv('JOINCTL_READINESS__TIMEOUT', '240')
    monkeypatch.setenv('JOINCTL_CHANNEL__TYPE', 'file')
    monkeypatch.setenv('JOINCTL_READINESS__TOKEN_FILES', '/a/node-token,/b/token')
    monkeypatch.setenv('JOINCTL_UNKNOWN__VALUE', 'ignored')

    config = HandshakeConfig.load(path)

    assert config.config_path == path
    assert config.cluster.name == 'prod'
    assert config.readiness.timeout == 240
    assert config.channel.type == 'file'
    assert config.readiness.token_files == ['/a/node-token', '/b/token']


@pytest.mark.parametrize('section', [
    {'readiness': {'timeout': 10}},
    {'readiness': {'timeout': 700}},
    {'channel': {'type': 'carrier-pigeon'}},
    {'collector': {'strategy': 'random'}},
    {'logging': {'level': 'LOUD'}},
])
def test_invalid_values(section):
    with pytest.raises(ValidationError):
        HandshakeConfig(**section)


def test_create_and_validate_config_file(tmp_path):
    path = create_config_file(tmp_path / 'joinctl.yaml')
    assert path.stat().st_mode & 0o777 == 0o600

    result = validate_config_file(path)
    assert result['valid']
    assert result['errors'] == []
    assert result['config']['readiness']['timeout'] == 300

    with pytest.raises(FileExistsError):
        create_config_file(path)
    assert create_config_file(path, overwrite=True) == path


def test_validate_reports_field_errors(tmp_path):
    path = tmp_path / 'bad.yaml'
    path.write_text(yaml.safe_dump({'readiness': {'timeout': 5}, 'channel': {'type': 'http'}}))

    result = validate_config_file(path)

    assert not result['valid']
    assert any(error.startswith('readiness.timeout') for error in result['errors'])


def test_validate_warns_about_incomplete_channel(tmp_path):
    path = tmp_path / 'http.yaml'
    path.write_text(yaml.safe_dump({'channel': {'type': 'http', 'api_key': 'sekrit'}}))
    path.chmod(0o644)

    result = validate_config_file(path)

    assert result['valid']
    assert "channel.type is http but channel.url is not set" in result['warnings']
    assert any('insecure permissions' in warning for warning in result['warnings'])
    assert result['config']['channel']['api_key'] == '[REDACTED]'


def test_validate_missing_file(tmp_path):
    result = validate_config_file(tmp_path / 'nope.yaml')
    assert not result['exists']
    assert not result['valid']


def test_show_config_redacts_secrets():
    config = HandshakeConfig(channel={'type': 'http', 'url': 'http://catalog:8140', 'api_key': 'sekrit'})
    rendered = show_config(config)
    assert 'sekrit' not in rendered
    assert 'http://catalog:8140' in rendered
    assert 'JOINCTL_READINESS__TIMEOUT' in rendered
