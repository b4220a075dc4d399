"""Tests for the session context and token resolution."""

from __future__ import annotations

from typing import List, Optional

import pytest
import pytest_mock
import requests

from cutout_service.errors import AuthenticationError
from cutout_service.identity import Identity, RestIdentityResolver, SessionContext
from cutout_service.rest import RestClient


def test_listeners_receive_changes() -> None:
    session = SessionContext()
    seen: List[Optional[Identity]] = []
    unsubscribe = session.subscribe(seen.append)

    session.sign_in(Identity("user-1", "a@example.com"))
    session.sign_in(Identity("user-1", "a@example.com"))
    session.sign_out()
    unsubscribe()
    session.sign_in(Identity("user-2"))

    assert seen == [Identity("user-1", "a@example.com"), None]
    assert session.identity == Identity("user-2")
    assert session.authenticated


def test_resolver_builds_identity(mocker: pytest_mock.MockerFixture) -> None:
    client = mocker.Mock(spec=RestClient)
    client.get_user.return_value = {"id": "abc", "email": "a@example.com"}

    identity = RestIdentityResolver(client).resolve("token-1")

    assert identity == Identity("abc", "a@example.com")
    client.get_user.assert_called_once_with("token-1")


def test_resolver_rejects_bad_tokens(mocker: pytest_mock.MockerFixture) -> None:
    client = mocker.Mock(spec=RestClient)
    client.get_user.side_effect = requests.HTTPError("401 Client Error")

    with pytest.raises(AuthenticationError):
        RestIdentityResolver(client).resolve("expired")


def test_resolver_requires_user_id(mocker: pytest_mock.MockerFixture) -> None:
    client = mocker.Mock(spec=RestClient)
    client.get_user.return_value = {"email": "a@example.com"}

    with pytest.raises(AuthenticationError):
        RestIdentityResolver(client).resolve("token")
