"""
Tests for native Google Sign-In capability detection.
"""

import sys
import textwrap
import uuid

import pytest

from sessionkit.oauth.native import NativeGoogleSignIn, detect_native_google_sign_in


@pytest.fixture
def provider_module(tmp_path, monkeypatch):
    """Write an importable module and return its name."""

    def write(source):
        name = f"native_signin_{uuid.uuid4().hex}"
        (tmp_path / f"{name}.py").write_text(textwrap.dedent(source), encoding="utf-8")
        monkeypatch.syspath_prepend(str(tmp_path))
        monkeypatch.delitem(sys.modules, name, raising=False)
        return name

    return write


def test_empty_module_name_disables(logger):
    assert detect_native_google_sign_in("", logger) is None


def test_missing_module(logger, log_stream):
    assert detect_native_google_sign_in("no_such_pkg.google_signin", logger) is None
    assert "is not installed" in log_stream.getvalue()


def test_module_without_factory(logger, provider_module):
    name = provider_module("VALUE = 1\n")
    assert detect_native_google_sign_in(name, logger) is None


def test_factory_returning_unsupported_object(logger, provider_module):
    name = provider_module("def create_sign_in():\n    return object()\n")
    assert detect_native_google_sign_in(name, logger) is None


def test_valid_provider(logger, provider_module):
    name = provider_module(
        """
        class SignIn:
            async def sign_in(self):
                return None

            async def sign_out(self):
                pass


        def create_sign_in():
            return SignIn()
        """
    )

    native = detect_native_google_sign_in(name, logger)

    assert isinstance(native, NativeGoogleSignIn)


def test_module_whose_import_fails(logger, log_stream, provider_module):
    name = provider_module("import not_a_real_dependency_xyz\n")

    assert detect_native_google_sign_in(name, logger) is None
    assert "could not be imported" in log_stream.getvalue()


def test_factory_that_raises(logger, log_stream, provider_module):
    name = provider_module(
        """
        def create_sign_in():
            raise RuntimeError("Play services unavailable")
        """
    )

    assert detect_native_google_sign_in(name, logger) is None
    assert "Play services unavailable" in log_stream.getvalue()
