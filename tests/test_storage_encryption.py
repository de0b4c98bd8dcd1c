"""Local object store and Fernet helpers."""

import pytest
from cryptography.fernet import Fernet

from flowiq import encryption
from flowiq.config import get_settings
from flowiq.errors import NotFoundError, StorageError
from flowiq.storage import LocalStorage, get_storage, sanitize_filename


def test_secret_round_trip_and_key_file():
    token = encryption.encrypt_secret('ehr-api-key')
    assert token != 'ehr-api-key'
    assert encryption.decrypt_secret(token) == 'ehr-api-key'
    assert (get_settings().data_dir / 'fernet.key').exists()


def test_configured_key_is_used(monkeypatch):
    key = Fernet.generate_key().decode()
    monkeypatch.setenv('FLOWIQ_ENCRYPTION_KEY', key)
    get_settings.cache_clear()
    encryption.reset_cipher_cache()
    blob = encryption.encrypt_bytes(b'card image')
    assert Fernet(key.encode()).decrypt(blob) == b'card image'


def test_tampered_ciphertext_rejected():
    with pytest.raises(ValueError):
        encryption.decrypt_bytes(b'not a token')
    with pytest.raises(ValueError):
        encryption.decrypt_secret('garbage')
    with pytest.raises(TypeError):
        encryption.encrypt_bytes('text')


def test_put_get_encrypted(tmp_path):
    store = LocalStorage(tmp_path)
    ref = store.put('insurance-cards', 't1/p1/card-front.png', b'\x89PNG', 'image/png', encrypt=True)
    assert ref == 'insurance-cards/t1/p1/card-front.png'
    on_disk = (tmp_path / 'insurance-cards' / 't1' / 'p1' / 'card-front.png').read_bytes()
    assert on_disk != b'\x89PNG'
    assert store.get('insurance-cards', 't1/p1/card-front.png') == b'\x89PNG'
    assert store.content_type('insurance-cards', 't1/p1/card-front.png') == 'image/png'
    assert store.url('insurance-cards', 't1/p1/card-front.png') == '/api/storage/insurance-cards/t1/p1/card-front.png'


def test_plain_objects_and_delete(tmp_path):
    store = LocalStorage(tmp_path)
    store.put('exports', 'a.csv', b'x,y', 'text/csv')
    assert store.exists('exports', 'a.csv')
    assert store.delete('exports', 'a.csv') is True
    assert store.delete('exports', 'a.csv') is False
    with pytest.raises(NotFoundError):
        store.get('exports', 'a.csv')


@pytest.mark.parametrize('key', ['../escape.txt', '/abs', 'a\\b', 'x.meta.json', ''])
def test_unsafe_keys_rejected(tmp_path, key):
    with pytest.raises(StorageError):
        LocalStorage(tmp_path).put('exports', key, b'data')


def test_invalid_bucket(tmp_path):
    with pytest.raises(StorageError):
        LocalStorage(tmp_path).put('Bad_Bucket', 'a', b'data')


def test_default_root_follows_settings():
    assert get_storage().root == get_settings().storage_dir


def test_sanitize_filename():
    assert sanitize_filename('../../etc/passwd') == 'passwd'
    assert sanitize_filename('my card (1).png') == 'my_card__1_.png'
    assert sanitize_filename(None) == 'upload'
