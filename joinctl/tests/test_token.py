from fakes import VALID_TOKEN, FakeRunner
from joinctl.modules.k3s.host import K3sHost
from joinctl.modules.k3s.models import TokenStatus
from joinctl.modules.k3s.token import CredentialStore, classify_token, is_valid_token, normalize_token


def test_valid_token_format():
    assert is_valid_token(VALID_TOKEN)
    assert is_valid_token("K10" + "a" * 38)


def test_rejects_short_or_unprefixed_tokens():
    assert not is_valid_token("K10" + "a" * 37)  # exactly 40 chars
    assert not is_valid_token("K10short")
    assert not is_valid_token("x" + VALID_TOKEN[1:])
    assert not is_valid_token("KZ" + VALID_TOKEN[2:])
    assert not is_valid_token("")
    assert not is_valid_token(None)


def test_normalize_strips_line_endings():
    assert normalize_token(f"  {VALID_TOKEN}\r\n") == VALID_TOKEN
    assert normalize_token(None) == ''


def test_classify_token():
    assert classify_token(None) == (TokenStatus.MISSING, '')
    assert classify_token(VALID_TOKEN + "\n") == (TokenStatus.VALID, VALID_TOKEN)
    assert classify_token("K10short\n") == (TokenStatus.INVALID, "K10short")


def _store(files):
    def handler(line, spec):
        path = line.split(' ', 1)[1]
        if path in files:
            return 0, files[path], ''
        return 1, '', 'No such file or directory'
    return CredentialStore(K3sHost(FakeRunner(handler), use_sudo=False))


def test_credential_store_prefers_node_token():
    store = _store({
        '/var/lib/rancher/k3s/server/node-token': VALID_TOKEN + "\n",
        '/var/lib/rancher/k3s/server/token': "K10short",
    })
    assert store.read() == (TokenStatus.VALID, VALID_TOKEN)


def test_credential_store_falls_back_to_alternative_file():
    store = _store({'/var/lib/rancher/k3s/server/token': VALID_TOKEN})
    assert store.token() == VALID_TOKEN


def test_credential_store_missing_and_invalid():
    assert _store({}).read() == (TokenStatus.MISSING, '')
    invalid = _store({'/var/lib/rancher/k3s/server/node-token': "K10short"})
    assert invalid.read()[0] == TokenStatus.INVALID
    assert invalid.token() is None
