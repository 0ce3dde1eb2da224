"""
CLI command tests.

Verifies:
- Issued tokens authenticate API calls
- A revoked token is rejected with 401 and cannot be revoked twice
- Unknown tokens are reported, not raised
"""

from marketplace.services import session_service


def _invoke(app, *args):
    return app.test_cli_runner().invoke(args=list(args))


class TestRevokeToken:

    def test_revoked_token_is_rejected(self, app, client, db_session, customer):
        _, token = session_service.create_session(customer.id)
        headers = {'Authorization': f'Bearer {token}'}
        assert client.get("/api/notifications", headers=headers).status_code == 200

        result = _invoke(app, "users", "revoke-token", "--token", token)

        assert result.exit_code == 0
        assert "PASS Token revoked" in result.output
        assert session_service.validate_session(token) is None
        assert client.get("/api/notifications", headers=headers).status_code == 401

    def test_second_revoke_fails(self, app, db_session, customer):
        _, token = session_service.create_session(customer.id)
        _invoke(app, "users", "revoke-token", "--token", token)

        result = _invoke(app, "users", "revoke-token", "--token", token)
        assert "FAIL Token not found or already revoked" in result.output

    def test_unknown_token(self, app, db_session):
        result = _invoke(app, "users", "revoke-token", "--token", "not-a-token")
        assert result.exit_code == 0
        assert "FAIL" in result.output

    def test_issue_token_authenticates(self, app, client, db_session, customer):
        result = _invoke(app, "users", "issue-token", "--email", customer.email)

        assert "PASS Token for" in result.output
        token = result.output.strip().splitlines()[-1]
        assert session_service.validate_session(token).user.id == customer.id
        assert client.get("/api/notifications", headers={'Authorization': f'Bearer {token}'}).status_code == 200
