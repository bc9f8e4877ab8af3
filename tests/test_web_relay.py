"""
Tests for the Google OAuth web relay.
"""

import asyncio
from urllib.parse import parse_qs, urlencode, urlparse

import httpx
import pytest

from conftest import make_jwt
from sessionkit.errors import (
    ConfigurationError,
    OAuthCancelledError,
    OAuthMissingTokenError,
    OAuthProviderError,
    OAuthStateMismatchError,
)
from sessionkit.models.auth_models import GoogleWebSignInResult, PendingWebResult
from sessionkit.oauth.browser import CallbackWindow
from sessionkit.oauth.mailbox import StorageMailbox
from sessionkit.oauth.web_relay import (
    POPUP_WINDOW_NAME,
    RESULT_STORAGE_KEY,
    STATE_STORAGE_KEY,
    GoogleWebRelay,
    parse_redirect_fragment,
)
from sessionkit.storage.memory import MemoryStorage

ORIGIN = "http://localhost:8765"

USERINFO = {
    "sub": "google-1",
    "email": "ana@gmail.com",
    "name": "Ana Pérez",
    "given_name": "Ana",
    "family_name": "Pérez",
    "picture": "https://example.com/ana.png",
}

ID_TOKEN = make_jwt({"sub": "google-jwt", "email": "jwt@gmail.com", "name": "Jwt User"})


class FakeWindow(CallbackWindow):
    """Initiating window whose popups may be blocked."""

    def __init__(self, fragment="", name="main", popups_allowed=True):
        super().__init__(fragment=fragment, origin=ORIGIN, name=name)
        self.popups_allowed = popups_allowed
        self.popups = []
        self.navigated = []

    def open_popup(self, url, name, features):
        if not self.popups_allowed:
            return False
        self.popups.append((url, name, features))
        return True

    def navigate(self, url):
        self.navigated.append(url)


def userinfo_transport(status=200, body=None):
    def handler(request):
        assert request.headers["Authorization"] == "Bearer google-access"
        return httpx.Response(status, json=USERINFO if body is None else body)

    return httpx.MockTransport(handler)


def fragment(**params):
    return "#" + urlencode(params)


@pytest.fixture
def state_storage():
    return MemoryStorage()


@pytest.fixture
def mailbox():
    return StorageMailbox(RESULT_STORAGE_KEY)


@pytest.fixture
def make_relay(config, state_storage, mailbox, logger):
    def factory(window, nonces=("nonce-1",), clock=None, transport=None, cfg=None):
        queue = iter(nonces)
        kwargs = {}
        if clock is not None:
            kwargs["clock"] = clock
        return GoogleWebRelay(
            config=cfg or config,
            window=window,
            state_storage=state_storage,
            mailbox=mailbox,
            logger=logger,
            http_transport=transport or userinfo_transport(),
            nonce_factory=lambda: next(queue),
            **kwargs,
        )

    return factory


class TestParseFragment:
    """Fragment parsing"""

    def test_parses_tokens_and_state(self):
        params = parse_redirect_fragment("#id_token=abc&access_token=xyz&state=s1")
        assert params.id_token == "abc"
        assert params.access_token == "xyz"
        assert params.state == "s1"
        assert params.has_oauth_params

    def test_parses_error(self):
        params = parse_redirect_fragment("error=access_denied&error_description=No+thanks")
        assert params.error == "access_denied"
        assert params.error_description == "No thanks"

    def test_plain_anchor_is_not_oauth(self):
        assert not parse_redirect_fragment("#section-2").has_oauth_params


class TestInitiate:
    """Starting a handshake"""

    @pytest.mark.asyncio
    async def test_opens_named_popup_with_authorization_url(self, make_relay, state_storage):
        window = FakeWindow()
        relay = make_relay(window)

        await relay.initiate()

        assert await state_storage.get_item(STATE_STORAGE_KEY) == "nonce-1"
        (url, name, features), = window.popups
        assert name == POPUP_WINDOW_NAME
        assert "width=500" in features
        query = parse_qs(urlparse(url).query)
        assert query["client_id"] == ["client-123"]
        assert query["redirect_uri"] == [f"{ORIGIN}/oauth2callback"]
        assert query["response_type"] == ["token id_token"]
        assert query["scope"] == ["openid profile email"]
        assert query["state"] == ["nonce-1"]
        assert query["nonce"] == ["nonce-1"]

    @pytest.mark.asyncio
    async def test_blocked_popup_navigates_current_window(self, make_relay):
        window = FakeWindow(popups_allowed=False)
        relay = make_relay(window)

        await relay.initiate()

        assert len(window.navigated) == 1
        assert "state=nonce-1" in window.navigated[0]

    @pytest.mark.asyncio
    async def test_missing_client_id_has_no_side_effects(self, make_relay, config, state_storage):
        window = FakeWindow()
        relay = make_relay(window, cfg=config.model_copy(update={"GOOGLE_WEB_CLIENT_ID": " "}))

        assert relay.is_available is False
        with pytest.raises(ConfigurationError):
            await relay.initiate()

        assert window.popups == []
        assert window.navigated == []
        assert await state_storage.get_item(STATE_STORAGE_KEY) is None

    def test_configured_origin_wins(self, make_relay, config):
        cfg = config.model_copy(update={"GOOGLE_WEB_ORIGIN": "https://app.example.com/"})
        relay = make_relay(FakeWindow(), cfg=cfg)
        assert relay.build_redirect_uri() == "https://app.example.com/oauth2callback"


class TestPopupRelay:
    """Completing in the popup and draining in the initiating window"""

    @pytest.mark.asyncio
    async def test_full_handshake(self, make_relay, state_storage):
        main = FakeWindow()
        main_relay = make_relay(main)
        await main_relay.initiate()

        popup = CallbackWindow(
            fragment=fragment(id_token=ID_TOKEN, access_token="google-access", state="nonce-1"),
            origin=ORIGIN,
            name=POPUP_WINDOW_NAME,
        )
        popup_relay = make_relay(popup)

        assert await popup_relay.consume_pending() is None
        assert popup.closed is True
        assert popup.fragment == ""
        assert await state_storage.get_item(STATE_STORAGE_KEY) is None

        result = await main_relay.drain()
        assert isinstance(result, GoogleWebSignInResult)
        assert result.id_token == ID_TOKEN
        assert result.access_token == "google-access"
        assert result.user.id == "google-1"
        assert result.user.email == "ana@gmail.com"
        assert result.user.photo == "https://example.com/ana.png"

        assert await main_relay.drain() is None

    @pytest.mark.asyncio
    async def test_mailbox_envelope_is_camel_case(self, make_relay, mailbox):
        popup = CallbackWindow(
            fragment=fragment(id_token=ID_TOKEN, access_token="google-access"),
            origin=ORIGIN,
            name=POPUP_WINDOW_NAME,
        )
        await make_relay(popup).consume_pending()

        raw = await mailbox.read_and_clear()
        assert '"idToken"' in raw
        assert '"accessToken"' in raw
        assert PendingWebResult.model_validate_json(raw).result.user.given_name == "Ana"

    @pytest.mark.asyncio
    async def test_watch_delivers_result(self, make_relay):
        main_relay = make_relay(FakeWindow())
        received = []
        stop = main_relay.watch(received.append)

        popup = CallbackWindow(
            fragment=fragment(id_token=ID_TOKEN, access_token="google-access"),
            origin=ORIGIN,
            name=POPUP_WINDOW_NAME,
        )
        await make_relay(popup).consume_pending()
        await asyncio.sleep(0)
        await main_relay.join()
        stop()

        assert len(received) == 1
        assert received[0].user.id == "google-1"

    @pytest.mark.asyncio
    async def test_stale_result_is_discarded(self, make_relay):
        popup = CallbackWindow(
            fragment=fragment(id_token=ID_TOKEN, access_token="google-access"),
            origin=ORIGIN,
            name=POPUP_WINDOW_NAME,
        )
        await make_relay(popup, clock=lambda: 1_000.0).consume_pending()

        main_relay = make_relay(FakeWindow(), clock=lambda: 1_000.0 + 601)
        assert await main_relay.drain() is None

    @pytest.mark.asyncio
    async def test_invalid_envelope_is_discarded(self, make_relay, mailbox):
        await mailbox.write('{"unexpected": true}')
        assert await make_relay(FakeWindow()).drain() is None
        assert await mailbox.read_and_clear() is None


class TestConsumePending:
    """Validation of the redirect fragment"""

    @pytest.mark.asyncio
    async def test_non_popup_window_returns_result(self, make_relay, state_storage, mailbox):
        await state_storage.set_item(STATE_STORAGE_KEY, "nonce-1")
        window = FakeWindow(
            fragment=fragment(id_token=ID_TOKEN, access_token="google-access", state="nonce-1"),
        )

        result = await make_relay(window).consume_pending()

        assert result.user.email == "ana@gmail.com"
        assert window.closed is False
        assert window.fragment == ""
        assert await mailbox.read_and_clear() is None

    @pytest.mark.asyncio
    async def test_state_mismatch(self, make_relay, state_storage, mailbox):
        await state_storage.set_item(STATE_STORAGE_KEY, "nonce-1")
        window = CallbackWindow(
            fragment=fragment(id_token=ID_TOKEN, state="forged"),
            origin=ORIGIN,
            name=POPUP_WINDOW_NAME,
        )

        with pytest.raises(OAuthStateMismatchError):
            await make_relay(window).consume_pending()

        assert await state_storage.get_item(STATE_STORAGE_KEY) is None
        assert window.fragment == ""
        assert await mailbox.read_and_clear() is None

    @pytest.mark.asyncio
    async def test_missing_stored_state_is_accepted(self, make_relay):
        window = FakeWindow(
            fragment=fragment(id_token=ID_TOKEN, access_token="google-access", state="nonce-1"),
        )
        result = await make_relay(window).consume_pending()
        assert result is not None

    @pytest.mark.asyncio
    async def test_second_initiate_replaces_nonce(self, make_relay, state_storage):
        main_relay = make_relay(FakeWindow(), nonces=("nonce-1", "nonce-2"))
        await main_relay.initiate()
        await main_relay.initiate()

        assert await state_storage.get_item(STATE_STORAGE_KEY) == "nonce-2"
        stale = FakeWindow(fragment=fragment(id_token=ID_TOKEN, state="nonce-1"))
        with pytest.raises(OAuthStateMismatchError):
            await make_relay(stale).consume_pending()

    @pytest.mark.asyncio
    async def test_later_handshake_completes(self, make_relay, state_storage):
        main_relay = make_relay(FakeWindow(), nonces=("nonce-1", "nonce-2"))
        await main_relay.initiate()
        await main_relay.initiate()

        current = FakeWindow(
            fragment=fragment(id_token=ID_TOKEN, access_token="google-access", state="nonce-2"),
        )
        assert await make_relay(current).consume_pending() is not None
        assert await state_storage.get_item(STATE_STORAGE_KEY) is None

    @pytest.mark.asyncio
    async def test_access_denied_is_cancellation(self, make_relay):
        window = FakeWindow(fragment=fragment(error="access_denied"))
        with pytest.raises(OAuthCancelledError):
            await make_relay(window).consume_pending()

    @pytest.mark.asyncio
    async def test_provider_error_surfaces_description(self, make_relay):
        window = FakeWindow(
            fragment=fragment(error="server_error", error_description="Try later"),
        )
        with pytest.raises(OAuthProviderError, match="Try later") as excinfo:
            await make_relay(window).consume_pending()
        assert excinfo.value.error == "server_error"

    @pytest.mark.asyncio
    async def test_provider_error_without_description(self, make_relay):
        window = FakeWindow(fragment=fragment(error="invalid_scope"))
        with pytest.raises(OAuthProviderError, match="invalid_scope"):
            await make_relay(window).consume_pending()

    @pytest.mark.asyncio
    async def test_missing_id_token(self, make_relay):
        window = FakeWindow(fragment=fragment(access_token="google-access"))
        with pytest.raises(OAuthMissingTokenError):
            await make_relay(window).consume_pending()
        assert window.fragment == ""

    @pytest.mark.asyncio
    async def test_userinfo_failure_falls_back_to_id_token(self, make_relay):
        window = FakeWindow(
            fragment=fragment(id_token=ID_TOKEN, access_token="google-access"),
        )
        relay = make_relay(window, transport=userinfo_transport(status=500, body={}))

        result = await relay.consume_pending()

        assert result.user.id == "google-jwt"
        assert result.user.email == "jwt@gmail.com"
        assert result.user.name == "Jwt User"

    @pytest.mark.asyncio
    async def test_without_access_token_uses_id_token(self, make_relay):
        def unreachable(request):
            raise AssertionError("userinfo must not be called")

        window = FakeWindow(fragment=fragment(id_token=ID_TOKEN))
        relay = make_relay(window, transport=httpx.MockTransport(unreachable))

        result = await relay.consume_pending()

        assert result.user.id == "google-jwt"

    @pytest.mark.asyncio
    async def test_plain_anchor_drains_instead(self, make_relay):
        window = FakeWindow(fragment="#pricing")
        assert await make_relay(window).consume_pending() is None

    @pytest.mark.asyncio
    async def test_initial_fragment_snapshot_is_used_once(self, make_relay):
        window = FakeWindow(
            fragment=fragment(id_token=ID_TOKEN, access_token="google-access"),
        )
        relay = make_relay(window)
        # The host router cleared the fragment before the relay ran.
        window.clear_hash()

        assert await relay.consume_pending() is not None
        assert await relay.consume_pending() is None
