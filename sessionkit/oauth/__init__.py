"""
Google OAuth package.

    from sessionkit.oauth import GoogleWebRelay, FileMailbox
"""

from __future__ import annotations

from sessionkit.oauth.browser import BrowserWindow, CallbackWindow, SystemBrowserWindow
from sessionkit.oauth.jwt import decode_jwt_payload, token_expiry
from sessionkit.oauth.mailbox import FileMailbox, Mailbox, StorageMailbox
from sessionkit.oauth.native import NativeGoogleSignIn, detect_native_google_sign_in
from sessionkit.oauth.web_relay import (
    POPUP_WINDOW_NAME,
    RESULT_STORAGE_KEY,
    STATE_STORAGE_KEY,
    GoogleWebRelay,
    parse_redirect_fragment,
)

__all__ = [
    "BrowserWindow",
    "CallbackWindow",
    "FileMailbox",
    "GoogleWebRelay",
    "Mailbox",
    "NativeGoogleSignIn",
    "POPUP_WINDOW_NAME",
    "RESULT_STORAGE_KEY",
    "STATE_STORAGE_KEY",
    "StorageMailbox",
    "SystemBrowserWindow",
    "decode_jwt_payload",
    "detect_native_google_sign_in",
    "parse_redirect_fragment",
    "token_expiry",
]
