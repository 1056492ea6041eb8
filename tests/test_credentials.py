import binascii
import os

import pytest

from conftest import b64
from poolsync.services.credentials import credential_dir, remove_credentials, stage_credentials


def test_stages_decoded_files(tmp_path):
    staged = stage_credentials("/Common/poolA", b64("CERT"), b64("KEY"), b64("CA"), str(tmp_path))
    assert os.path.dirname(staged.cert_path) == str(tmp_path / "Common_poolA")
    assert open(staged.cert_path).read() == "CERT"
    assert open(staged.key_path).read() == "KEY"
    assert open(staged.ca_path).read() == "CA"
    assert os.stat(staged.key_path).st_mode & 0o777 == 0o600


def test_pools_do_not_share_files(tmp_path):
    a = stage_credentials("poolA", b64("A"), b64("A"), b64("A"), str(tmp_path))
    b = stage_credentials("poolB", b64("B"), b64("B"), b64("B"), str(tmp_path))
    assert a.key_path != b.key_path
    assert open(a.key_path).read() == "A"


def test_bad_blob_writes_nothing(tmp_path):
    with pytest.raises(binascii.Error):
        stage_credentials("poolA", b64("CERT"), "%%%", b64("CA"), str(tmp_path))
    assert not os.path.exists(credential_dir(str(tmp_path), "poolA"))


def test_remove_is_idempotent(tmp_path):
    stage_credentials("poolA", b64("C"), b64("K"), b64("A"), str(tmp_path))
    remove_credentials("poolA", str(tmp_path))
    assert not os.path.exists(credential_dir(str(tmp_path), "poolA"))
    remove_credentials("poolA", str(tmp_path))
