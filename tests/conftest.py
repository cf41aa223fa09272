import pytest


@pytest.fixture
def executable(tmp_path):
    """Factory creating dummy executables under tmp_path."""
    def make(name):
        path = tmp_path / name
        path.write_text('#!/bin/sh\nexit 0\n')
        path.chmod(0o755)
        return str(path)
    return make
