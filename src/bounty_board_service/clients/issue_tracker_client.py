"""Async GitHub App client for bounty labels and comments."""

from __future__ import annotations

import time
from datetime import datetime
from pathlib import Path
from typing import Any

import httpx
from joserfc import jwt
from joserfc.jwk import RSAKey

from bounty_board_service.core.exceptions import ExternalServiceError, RateLimitError
from bounty_board_service.logging import get_logger

_SERVICE_NAME = "issue_tracker"
_APP_JWT_LIFETIME_SECONDS = 540
_APP_JWT_CLOCK_SKEW_SECONDS = 60
_TOKEN_REFRESH_MARGIN_SECONDS = 60

ADD_LABEL_AND_COMMENT_MUTATION = """
mutation AddLabelAndCreateComment($issueId: ID!, $labelIds: [ID!]!, $body: String!) {
    addLabelsToLabelable(input: {labelableId: $issueId, labelIds: $labelIds}) {
        clientMutationId
    }
    addComment(input: {subjectId: $issueId, body: $body}) {
        commentEdge {
            node {
                id
            }
        }
    }
}
"""

REMOVE_LABEL_AND_DELETE_COMMENT_MUTATION = """
mutation RemoveLabelAndDeleteComment($issueId: ID!, $labelIds: [ID!]!, $commentId: ID!) {
    removeLabelsFromLabelable(input: {labelableId: $issueId, labelIds: $labelIds}) {
        clientMutationId
    }
    deleteIssueComment(input: {id: $commentId}) {
        clientMutationId
    }
}
"""

DELETE_COMMENT_MUTATION = """
mutation DeleteComment($commentId: ID!) {
    deleteIssueComment(input: {id: $commentId}) {
        clientMutationId
    }
}
"""

UPDATE_COMMENT_MUTATION = """
mutation UpdateIssueComment($commentId: ID!, $body: String!) {
    updateIssueComment(input: {id: $commentId, body: $body}) {
        issueComment {
            id
        }
    }
}
"""


def _rate_limit_retry_after(response: httpx.Response) -> float | None:
    retry_after = response.headers.get("retry-after")
    if retry_after is not None:
        try:
            return float(retry_after)
        except ValueError:
            return None
    reset_at = response.headers.get("x-ratelimit-reset")
    if reset_at is not None:
        try:
            return max(float(reset_at) - time.time(), 0.0)
        except ValueError:
            return None
    return None


def _is_rate_limited(response: httpx.Response) -> bool:
    if response.status_code == 429:
        return True
    return response.status_code == 403 and response.headers.get("x-ratelimit-remaining") == "0"


class IssueTrackerClient:
    """
    Client for the GitHub GraphQL API acting as a GitHub App installation.

    Installation access tokens are minted from an RS256 app JWT and cached
    per installation until shortly before they expire. A 401 drops the
    cached token and is reported as retryable so the next attempt mints a
    fresh one.

    Posting the bounty comment is not idempotent: once the request may have
    reached GitHub (read timeouts, dropped connections, 5xx other than 503)
    the failure is reported as non-retryable so a retry cannot post a
    second comment.
    """

    def __init__(
        self,
        api_base_url: str,
        graphql_path: str,
        app_id: str,
        private_key_path: str,
        timeout_seconds: int,
    ) -> None:
        self._api_base_url = api_base_url
        self._graphql_path = graphql_path
        self._app_id = app_id
        self._private_key_path = private_key_path
        self._signing_key: RSAKey | None = None
        self._tokens: dict[str, tuple[str, float]] = {}
        self._client = httpx.AsyncClient(
            base_url=api_base_url,
            timeout=httpx.Timeout(timeout_seconds),
            headers={"Accept": "application/vnd.github+json"},
        )

    def _app_jwt(self) -> str:
        if self._signing_key is None:
            pem = Path(self._private_key_path).read_bytes()
            self._signing_key = RSAKey.import_key(pem)
        now = int(time.time())
        claims = {
            "iat": now - _APP_JWT_CLOCK_SKEW_SECONDS,
            "exp": now + _APP_JWT_LIFETIME_SECONDS,
            "iss": self._app_id,
        }
        return jwt.encode({"alg": "RS256"}, claims, self._signing_key, algorithms=["RS256"])

    async def _post(
        self,
        path: str,
        *,
        operation: str,
        headers: dict[str, str],
        json: dict[str, Any] | None = None,
        creates: bool = False,
    ) -> httpx.Response:
        logger = get_logger(__name__)
        try:
            return await self._client.post(path, headers=headers, json=json)
        except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
            logger.warning(
                "Issue tracker connection failed",
                extra={"operation": operation, "error": str(exc), "base_url": self._api_base_url},
            )
            raise ExternalServiceError(
                "ISSUE_TRACKER_UNAVAILABLE",
                "Cannot connect to issue tracker",
                retryable=True,
                details={"operation": operation},
            ) from exc
        except httpx.TimeoutException as exc:
            logger.warning(
                "Issue tracker request timed out",
                extra={"operation": operation, "base_url": self._api_base_url},
            )
            raise ExternalServiceError(
                "ISSUE_TRACKER_TIMEOUT",
                "Issue tracker did not answer in time",
                retryable=not creates,
                details={"operation": operation},
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "Issue tracker HTTP error",
                extra={"operation": operation, "error": str(exc), "base_url": self._api_base_url},
            )
            raise ExternalServiceError(
                "ISSUE_TRACKER_UNAVAILABLE",
                "Issue tracker request failed",
                retryable=not creates,
                details={"operation": operation},
            ) from exc

    def _raise_for_status(
        self,
        response: httpx.Response,
        operation: str,
        creates: bool = False,
    ) -> None:
        if _is_rate_limited(response):
            raise RateLimitError(_SERVICE_NAME, _rate_limit_retry_after(response))
        status = response.status_code
        raise ExternalServiceError(
            "ISSUE_TRACKER_ERROR",
            "Issue tracker returned unexpected status",
            retryable=status in (401, 503) or (status >= 500 and not creates),
            details={"operation": operation, "status_code": status},
        )

    async def _installation_token(self, installation_id: str) -> str:
        cached = self._tokens.get(installation_id)
        if cached is not None and cached[1] - _TOKEN_REFRESH_MARGIN_SECONDS > time.time():
            return cached[0]

        operation = "installation_token"
        response = await self._post(
            f"/app/installations/{installation_id}/access_tokens",
            operation=operation,
            headers={"Authorization": f"Bearer {self._app_jwt()}"},
        )
        if response.status_code != 201:
            self._raise_for_status(response, operation)

        body: dict[str, Any] = response.json()
        token = str(body["token"])
        expires_at = datetime.fromisoformat(str(body["expires_at"]).replace("Z", "+00:00"))
        self._tokens[installation_id] = (token, expires_at.timestamp())
        return token

    async def _graphql(
        self,
        installation_id: str,
        query: str,
        variables: dict[str, Any],
        operation: str,
        creates: bool = False,
    ) -> dict[str, Any]:
        token = await self._installation_token(installation_id)
        response = await self._post(
            self._graphql_path,
            operation=operation,
            headers={"Authorization": f"Bearer {token}"},
            json={"query": query, "variables": variables},
            creates=creates,
        )
        if response.status_code == 401:
            self._tokens.pop(installation_id, None)
        if response.status_code != 200:
            self._raise_for_status(response, operation, creates)

        body: dict[str, Any] = response.json()
        errors = body.get("errors")
        if errors:
            rate_limited = any(
                isinstance(error, dict) and error.get("type") == "RATE_LIMITED" for error in errors
            )
            if rate_limited:
                raise RateLimitError(_SERVICE_NAME, None)
            raise ExternalServiceError(
                "ISSUE_TRACKER_ERROR",
                "Issue tracker rejected the mutation",
                retryable=False,
                details={"operation": operation, "errors": len(errors)},
            )
        data: dict[str, Any] = body.get("data") or {}
        return data

    async def add_bounty_label_and_comment(
        self,
        installation_id: str,
        issue_id: str,
        label_id: str,
        body: str,
    ) -> str:
        """
        Label an issue as a bounty and post the bounty comment.

        Returns:
            The id of the created comment
        """
        data = await self._graphql(
            installation_id,
            ADD_LABEL_AND_COMMENT_MUTATION,
            {"issueId": issue_id, "labelIds": [label_id], "body": body},
            "add_bounty_label_and_comment",
            creates=True,
        )
        try:
            return str(data["addComment"]["commentEdge"]["node"]["id"])
        except (KeyError, TypeError) as exc:
            raise ExternalServiceError(
                "ISSUE_TRACKER_INVALID_RESPONSE",
                "Issue tracker response is missing the comment id",
                retryable=False,
                details={"operation": "add_bounty_label_and_comment"},
            ) from exc

    async def remove_bounty_label_and_delete_comment(
        self,
        installation_id: str,
        issue_id: str,
        comment_id: str,
        label_id: str | None,
    ) -> None:
        """Remove the bounty label (when known) and delete the bounty comment."""
        if label_id is None:
            await self._graphql(
                installation_id,
                DELETE_COMMENT_MUTATION,
                {"commentId": comment_id},
                "delete_bounty_comment",
            )
            return
        await self._graphql(
            installation_id,
            REMOVE_LABEL_AND_DELETE_COMMENT_MUTATION,
            {"issueId": issue_id, "labelIds": [label_id], "commentId": comment_id},
            "remove_bounty_label_and_delete_comment",
        )

    async def update_issue_comment(self, installation_id: str, comment_id: str, body: str) -> None:
        """Replace the body of an existing comment."""
        await self._graphql(
            installation_id,
            UPDATE_COMMENT_MUTATION,
            {"commentId": comment_id, "body": body},
            "update_issue_comment",
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
