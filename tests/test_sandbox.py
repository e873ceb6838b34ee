import pytest

from app.config import Settings
from app.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ProvisioningError,
    RateLimitError,
    ValidationError,
)
from app.sandbox.orchestrator import NewEnvironment
from app.security.ratelimit import MemoryBucketStore
from app.services import build_services
from app.tasks.maintenance import expire_sandbox_sessions


class FakeProvisioner:
    def __init__(self, fail=False, error=None, on_provision=None):
        self.fail = fail
        self.error = error
        self.on_provision = on_provision
        self.running = set()
        self.released = []

    def provision(self, session_id, environment):
        if self.fail:
            raise ProvisioningError("image pull failed")
        if self.error is not None:
            raise self.error
        if self.on_provision is not None:
            self.on_provision(session_id)
        container_id = f"c{session_id}"
        self.running.add(container_id)
        return {"container_id": container_id, "host": "127.0.0.1", "ports": {"80/tcp": 32768}}

    def release(self, container_id):
        self.running.discard(container_id)
        self.released.append(container_id)


@pytest.fixture
def environment(services, admin):
    return services.sandbox.create_environment(
        NewEnvironment(name="Web Lab", environment_type="web", max_duration=30, target_services=["http"]),
        admin,
    )


def test_create_environment_requires_admin(services, user):
    with pytest.raises(AuthorizationError):
        services.sandbox.create_environment(NewEnvironment(name="x", environment_type="web"), user)


@pytest.mark.parametrize(
    "overrides,field",
    [
        ({"name": ""}, "name"),
        ({"environment_type": " "}, "environment_type"),
        ({"max_duration": 0}, "max_duration"),
    ],
)
def test_create_environment_validation(services, admin, overrides, field):
    values = dict(name="Lab", environment_type="web")
    values.update(overrides)
    with pytest.raises(ValidationError) as exc:
        services.sandbox.create_environment(NewEnvironment(**values), admin)
    assert exc.value.field == field


def test_list_environments(services, admin, environment):
    services.sandbox.create_environment(NewEnvironment(name="Net Lab", environment_type="network"), admin)
    services.sandbox.create_environment(
        NewEnvironment(name="Retired", environment_type="web", is_active=False), admin
    )
    assert {e.name for e in services.sandbox.list_environments()} == {"Web Lab", "Net Lab"}
    assert [e.name for e in services.sandbox.list_environments("network")] == ["Net Lab"]


def test_start_session(services, user, environment, clock, audit_events):
    session, info = services.sandbox.start_session(environment.id, user.id, "1.2.3.4", "pytest")
    assert session.status == "running"
    assert session.environment_name == "Web Lab"
    assert info["web_interface"].endswith(f"/session/{session.id}")
    assert info["target_services"] == ["http"]
    assert info["ssh_access"] is None
    assert session.connection_info == info
    assert session.expires_at == services.sandbox.get_session(session.id, user).expires_at
    assert len(audit_events("sandbox_session_started")) == 1


def test_network_environment_gets_ssh_access(services, admin, user):
    env = services.sandbox.create_environment(NewEnvironment(name="Net", environment_type="network"), admin)
    _, info = services.sandbox.start_session(env.id, user.id)
    assert info["ssh_access"]["username"] == "pentester"


def test_one_active_session_per_environment(services, admin, user, environment):
    session, _ = services.sandbox.start_session(environment.id, user.id)
    with pytest.raises(ConflictError):
        services.sandbox.start_session(environment.id, user.id)

    other = services.sandbox.create_environment(NewEnvironment(name="Other", environment_type="web"), admin)
    services.sandbox.start_session(other.id, user.id)

    services.sandbox.stop_session(session.id, user)
    again, _ = services.sandbox.start_session(environment.id, user.id)
    assert again.id != session.id


def test_inactive_environment(services, admin, user):
    env = services.sandbox.create_environment(
        NewEnvironment(name="Off", environment_type="web", is_active=False), admin
    )
    with pytest.raises(NotFoundError):
        services.sandbox.start_session(env.id, user.id)


def test_stop_is_idempotent(services, user, environment, clock, audit_events):
    session, _ = services.sandbox.start_session(environment.id, user.id)
    clock.advance(120)

    stopped = services.sandbox.stop_session(session.id, user)
    assert stopped.status == "stopped"
    assert stopped.duration == 120
    assert stopped.end_time is not None

    again = services.sandbox.stop_session(session.id, user)
    assert again.status == "stopped"
    assert again.end_time == stopped.end_time
    assert len(audit_events("sandbox_session_stopped")) == 1


def test_only_owner_or_admin_may_stop(services, admin, make_user, user, environment):
    session, _ = services.sandbox.start_session(environment.id, user.id)
    with pytest.raises(AuthorizationError):
        services.sandbox.stop_session(session.id, make_user("mallory"))
    assert services.sandbox.stop_session(session.id, admin).status == "stopped"


def test_other_users_cannot_read_session(services, make_user, user, environment):
    session, _ = services.sandbox.start_session(environment.id, user.id)
    with pytest.raises(NotFoundError):
        services.sandbox.get_session(session.id, make_user("mallory"))


def test_sessions_expire_at_deadline(services, user, environment, clock, audit_events):
    session, _ = services.sandbox.start_session(environment.id, user.id)
    clock.advance(30 * 60 - 1)
    assert services.sandbox.get_session(session.id, user).status == "running"

    clock.advance(1)
    history = services.sandbox.user_history(user.id)
    assert history[0].status == "expired"
    assert history[0].duration == 30 * 60
    assert len(audit_events("sandbox_session_expired")) == 1

    with pytest.raises(ConflictError):
        services.sandbox.log_action(session.id, user.id, "nmap -sV target")
    assert services.sandbox.stop_session(session.id, user).status == "expired"

    fresh, _ = services.sandbox.start_session(environment.id, user.id)
    assert fresh.status == "running"


def test_expiry_sweep(services, make_user, environment, clock):
    for name in ("a", "b"):
        services.sandbox.start_session(environment.id, make_user(name).id)
    assert services.sandbox.active_session_count() == 2

    clock.advance(31 * 60)
    assert expire_sandbox_sessions(services) == 2
    assert services.sandbox.expire_overdue_sessions() == 0
    assert services.sandbox.active_session_count() == 0


def test_history_newest_first(services, admin, user, environment, clock):
    other = services.sandbox.create_environment(NewEnvironment(name="Other", environment_type="web"), admin)
    services.sandbox.start_session(environment.id, user.id)
    clock.advance(5)
    services.sandbox.start_session(other.id, user.id)

    history = services.sandbox.user_history(user.id)
    assert [s.environment_name for s in history] == ["Other", "Web Lab"]
    assert len(services.sandbox.user_history(user.id, limit=1)) == 1


def test_log_action_and_findings(services, user, environment, audit_events):
    session, _ = services.sandbox.start_session(environment.id, user.id)
    services.sandbox.log_action(session.id, user.id, "gobuster dir", {"wordlist": "common.txt"})

    score = services.sandbox.submit_findings(
        session.id,
        user.id,
        [
            {"vulnerability_type": "sqli", "severity": "critical"},
            {"vulnerability_type": "xss", "severity": "medium"},
        ],
        notes="login form",
    )
    assert score == 150

    session = services.sandbox.get_session(session.id, user)
    assert session.actions_log[0]["action"] == "gobuster dir"
    assert session.score == 150
    assert session.notes == "login form"
    assert len(audit_events("sandbox_findings_submitted")) == 1

    with pytest.raises(ValidationError):
        services.sandbox.submit_findings(session.id, user.id, [{"vulnerability_type": "x", "severity": "huge"}])


def test_start_is_rate_limited(db_path, clock, admin, user, audit_events):
    services = build_services(
        config=Settings(sandbox_start_max_attempts=2),
        clock=clock,
        bucket_store=MemoryBucketStore(),
    )
    env = services.sandbox.create_environment(NewEnvironment(name="Lab", environment_type="web"), admin)
    session, _ = services.sandbox.start_session(env.id, user.id)
    services.sandbox.stop_session(session.id, user)
    services.sandbox.start_session(env.id, user.id)

    with pytest.raises(RateLimitError) as exc:
        services.sandbox.start_session(env.id, user.id)
    assert exc.value.retry_after > 0
    assert len(audit_events("sandbox_start_rate_limited")) == 1


def test_provisioner_backs_sessions(db_path, clock, admin, user):
    provisioner = FakeProvisioner()
    services = build_services(clock=clock, bucket_store=MemoryBucketStore(), provisioner=provisioner)
    env = services.sandbox.create_environment(
        NewEnvironment(name="Juice", environment_type="web", image="bkimminich/juice-shop"), admin
    )

    session, info = services.sandbox.start_session(env.id, user.id)
    assert session.container_id == f"c{session.id}"
    assert info["ports"] == {"80/tcp": 32768}
    assert provisioner.running == {session.container_id}

    services.sandbox.stop_session(session.id, user)
    assert provisioner.released == [session.container_id]


def test_failed_provisioning_leaves_no_active_session(db_path, clock, admin, user, audit_events):
    services = build_services(clock=clock, bucket_store=MemoryBucketStore(), provisioner=FakeProvisioner(fail=True))
    env = services.sandbox.create_environment(
        NewEnvironment(name="Broken", environment_type="web", image="missing:latest"), admin
    )

    with pytest.raises(ProvisioningError):
        services.sandbox.start_session(env.id, user.id)
    assert services.sandbox.user_history(user.id)[0].status == "stopped"
    assert len(audit_events("sandbox_session_failed")) == 1


def test_unexpected_provisioner_error_releases_the_slot(db_path, clock, admin, user, audit_events):
    provisioner = FakeProvisioner(error=RuntimeError("docker daemon went away"))
    services = build_services(clock=clock, bucket_store=MemoryBucketStore(), provisioner=provisioner)
    env = services.sandbox.create_environment(
        NewEnvironment(name="Flaky", environment_type="web", image="juice:latest"), admin
    )

    with pytest.raises(ProvisioningError) as exc:
        services.sandbox.start_session(env.id, user.id)
    assert "docker daemon went away" in exc.value.message
    assert services.sandbox.user_history(user.id)[0].status == "stopped"
    assert services.sandbox.active_session_count() == 0
    assert len(audit_events("sandbox_session_failed")) == 1

    provisioner.error = None
    session, _ = services.sandbox.start_session(env.id, user.id)
    assert session.status == "running"


def test_session_stopped_while_provisioning(db_path, clock, admin, user, audit_events):
    services = None

    def stop_mid_start(session_id):
        services.sandbox.stop_session(session_id, user)

    provisioner = FakeProvisioner(on_provision=stop_mid_start)
    services = build_services(clock=clock, bucket_store=MemoryBucketStore(), provisioner=provisioner)
    env = services.sandbox.create_environment(
        NewEnvironment(name="Racy", environment_type="web", image="juice:latest"), admin
    )

    with pytest.raises(ConflictError):
        services.sandbox.start_session(env.id, user.id)
    session = services.sandbox.user_history(user.id)[0]
    assert session.status == "stopped"
    assert provisioner.running == set()
    assert provisioner.released == [f"c{session.id}"]
    assert audit_events("sandbox_session_started") == []


def test_findings_rejected_once_terminal(services, user, environment, clock):
    session, _ = services.sandbox.start_session(environment.id, user.id)
    services.sandbox.stop_session(session.id, user)
    clock.advance(48 * 3600)

    with pytest.raises(ConflictError):
        services.sandbox.submit_findings(session.id, user.id, [{"vulnerability_type": "sqli", "severity": "critical"}])
    assert services.sandbox.get_session(session.id, user).score == 0

    expiring, _ = services.sandbox.start_session(environment.id, user.id)
    clock.advance(31 * 60)
    with pytest.raises(ConflictError):
        services.sandbox.submit_findings(expiring.id, user.id, [{"vulnerability_type": "xss", "severity": "low"}])

    with pytest.raises(NotFoundError):
        services.sandbox.submit_findings(9999, user.id, [])


def test_sandbox_api(client, user, admin, auth_headers):
    resp = client.post(
        "/api/security/sandbox/environments",
        json={"name": "API Lab", "environment_type": "web"},
        headers=auth_headers(admin),
    )
    env_id = resp.json()["environment"]["id"]

    headers = auth_headers(user)
    envs = client.get("/api/security/sandbox/environments", headers=headers).json()["environments"]
    assert [e["id"] for e in envs] == [env_id]

    resp = client.post("/api/security/sandbox/sessions", json={"environment_id": env_id}, headers=headers)
    assert resp.status_code == 200
    session_id = resp.json()["session"]["id"]
    assert resp.json()["connection_info"]["web_interface"]

    resp = client.post("/api/security/sandbox/sessions", json={"environment_id": env_id}, headers=headers)
    assert resp.status_code == 400

    resp = client.post(
        f"/api/security/sandbox/sessions/{session_id}/actions", json={"action": "whoami"}, headers=headers
    )
    assert resp.json() == {"success": True}

    resp = client.post(
        f"/api/security/sandbox/sessions/{session_id}/findings",
        json={"findings": [{"vulnerability_type": "idor", "severity": "high"}]},
        headers=headers,
    )
    assert resp.json()["score"] == 75

    for _ in range(2):
        resp = client.post(f"/api/security/sandbox/sessions/{session_id}/stop", headers=headers)
        assert resp.status_code == 200
        assert resp.json()["session"]["status"] == "stopped"

    history = client.get("/api/security/sandbox/sessions", headers=headers).json()["sessions"]
    assert history[0]["id"] == session_id
