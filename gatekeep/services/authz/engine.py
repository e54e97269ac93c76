from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from fnmatch import fnmatchcase
import inspect
import logging
import threading
from typing import Any, Literal

from gatekeep.core.errors import AuthorizationEvaluationError
from gatekeep.domain.config import AuthorizationConfig, Policy, PolicyRule
from gatekeep.domain.models import EventMetadata, SubjectGrants
from gatekeep.services.audit import AuditLog
from gatekeep.services.auth.clients import IdentityStore
from gatekeep.services.authz.evaluator import evaluate_condition, validate_condition
from gatekeep.services.authz.roles import RoleGraph, permission_matches


logger = logging.getLogger(__name__)

Stage = Literal["rbac", "abac", "policy", "default"]


@dataclass(frozen=True)
class AuthorizationDecision:
    allowed: bool
    stage: Stage
    reason: str
    matched_id: str | None = None
    # True only when a matching rule carried a deny effect.
    explicit_deny: bool = False
    trace: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class _Match:
    rule_id: str
    effect: str


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _subject_matches(subject: str, user_id: str, roles: tuple[str, ...], groups: tuple[str, ...]) -> bool:
    if subject == "*" or subject == user_id:
        return True
    if subject.startswith("role:"):
        return any(fnmatchcase(role, subject[5:]) for role in roles)
    if subject.startswith("group:"):
        return any(fnmatchcase(group, subject[6:]) for group in groups)
    return False


class AuthorizationEngine:
    """RBAC, then ABAC rules, then rule policies, then the default policy.

    Every ``authorize`` call writes exactly one ``authorization`` event: the
    result is ``success`` on allow, ``blocked`` when a deny rule matched and
    ``failure`` for default denies and evaluation errors.
    """

    def __init__(
        self,
        config: AuthorizationConfig,
        *,
        identity_store: IdentityStore,
        audit_log: AuditLog,
    ) -> None:
        self._identity_store = identity_store
        self._audit_log = audit_log
        self._lock = threading.Lock()
        self.configure(config)

    def configure(self, config: AuthorizationConfig) -> None:
        graph = RoleGraph.from_config(config.rbac)
        with self._lock:
            self._config = config
            self._graph = graph

    @property
    def config(self) -> AuthorizationConfig:
        return self._config

    async def authorize(
        self,
        user_id: str,
        resource: str,
        action: str,
        context: dict[str, Any] | None = None,
        *,
        metadata: EventMetadata | dict[str, Any] | None = None,
    ) -> bool:
        strategy = self._config.policies.evaluation
        try:
            decision = await self.explain(user_id, resource, action, context)
        except Exception as exc:
            error = (
                exc
                if isinstance(exc, AuthorizationEvaluationError)
                else AuthorizationEvaluationError("Authorization evaluation failed", cause=type(exc).__name__)
            )
            logger.warning("authz_evaluation_failed user=%s resource=%s action=%s", user_id, resource, action)
            self._audit_log.log_security_event(
                type="authorization",
                severity="high",
                source=user_id,
                target=resource,
                action=action,
                result="failure",
                details={"decision": "deny", "error": error.code, "message": error.message, "strategy": strategy},
                metadata=metadata,
            )
            if error is exc:
                raise
            raise error from exc

        if decision.allowed:
            result, severity = "success", "low"
        elif decision.explicit_deny:
            result, severity = "blocked", "medium"
        else:
            result, severity = "failure", "medium"
        self._audit_log.log_security_event(
            type="authorization",
            severity=severity,
            source=user_id,
            target=resource,
            action=action,
            result=result,
            details={
                "decision": "allow" if decision.allowed else "deny",
                "stage": decision.stage,
                "reason": decision.reason,
                "matched": decision.matched_id,
                "strategy": strategy,
            },
            metadata=metadata,
        )
        return decision.allowed

    async def explain(
        self,
        user_id: str,
        resource: str,
        action: str,
        context: dict[str, Any] | None = None,
    ) -> AuthorizationDecision:
        # Same evaluation as authorize without the audit write.
        grants = self._identity_store.get_grants(user_id)
        if inspect.isawaitable(grants):
            grants = await grants
        with self._lock:
            config = self._config
            graph = self._graph
        return self._evaluate(config, graph, user_id, resource, action, context or {}, grants)

    def _evaluate(
        self,
        config: AuthorizationConfig,
        graph: RoleGraph,
        user_id: str,
        resource: str,
        action: str,
        context: dict[str, Any],
        grants: SubjectGrants,
    ) -> AuthorizationDecision:
        trace: list[dict[str, Any]] = []
        assigned = grants.roles or ((config.rbac.default_role,) if config.rbac.default_role else ())
        roles = graph.expand(assigned)
        groups = tuple(str(group) for group in grants.attributes.get("groups", ()) or ())

        if config.rbac.enabled:
            for pattern in graph.permissions(roles) + tuple(grants.permissions):
                if permission_matches(pattern, resource, action):
                    trace.append({"stage": "rbac", "permission": pattern, "matched": True})
                    return AuthorizationDecision(
                        allowed=True,
                        stage="rbac",
                        reason="permission_granted",
                        matched_id=pattern,
                        trace=trace,
                    )
            trace.append({"stage": "rbac", "matched": False})

        strategy = config.policies.evaluation
        namespaces = self._namespaces(user_id, resource, action, context, grants, roles, groups)

        if config.abac.enabled and config.abac.rules:
            self._apply_attribute_definitions(config, namespaces)
            matches: list[_Match] = []
            ordered = sorted(
                (rule for rule in config.abac.rules if rule.enabled),
                key=lambda rule: -rule.priority,
            )
            for rule in ordered:
                validate_condition(rule.condition, max_depth=config.max_condition_depth)
                matched = evaluate_condition(rule.condition, namespaces)
                trace.append({"stage": "abac", "rule": rule.id, "effect": rule.effect, "matched": matched})
                if matched:
                    matches.append(_Match(rule.id, rule.effect))
                    if strategy == "first-match":
                        break
            decision = self._combine(matches, strategy, "abac", trace)
            if decision is not None:
                return decision

        matches = []
        for policy in sorted(
            (p for p in config.policies.policies if p.enabled),
            key=lambda p: -p.priority,
        ):
            for rule in policy.rules:
                if not self._rule_applies(rule, user_id, resource, action, roles, groups):
                    continue
                validate_condition(rule.condition, max_depth=config.max_condition_depth)
                matched = evaluate_condition(rule.condition, namespaces)
                effect = rule.effect or policy.effect
                trace.append(
                    {"stage": "policy", "policy": policy.id, "rule": rule.id, "effect": effect, "matched": matched}
                )
                if matched:
                    matches.append(_Match(_rule_key(policy, rule), effect))
                    if strategy == "first-match":
                        break
            if matches and strategy == "first-match":
                break
        decision = self._combine(matches, strategy, "policy", trace)
        if decision is not None:
            return decision

        allowed = config.policies.default_policy == "allow"
        return AuthorizationDecision(
            allowed=allowed,
            stage="default",
            reason=f"default_{config.policies.default_policy}",
            trace=trace,
        )

    @staticmethod
    def _rule_applies(
        rule: PolicyRule,
        user_id: str,
        resource: str,
        action: str,
        roles: tuple[str, ...],
        groups: tuple[str, ...],
    ) -> bool:
        return (
            _subject_matches(rule.subject, user_id, roles, groups)
            and fnmatchcase(resource, rule.resource)
            and fnmatchcase(action, rule.action)
        )

    @staticmethod
    def _combine(
        matches: list[_Match],
        strategy: str,
        stage: Stage,
        trace: list[dict[str, Any]],
    ) -> AuthorizationDecision | None:
        if not matches:
            return None
        if strategy == "first-match":
            chosen = matches[0]
        elif strategy == "allow-override":
            chosen = next((m for m in matches if m.effect == "allow"), matches[0])
        else:
            chosen = next((m for m in matches if m.effect == "deny"), matches[0])
        allowed = chosen.effect == "allow"
        return AuthorizationDecision(
            allowed=allowed,
            stage=stage,
            reason=f"{stage}_{chosen.effect}",
            matched_id=chosen.rule_id,
            explicit_deny=not allowed,
            trace=trace,
        )

    @staticmethod
    def _namespaces(
        user_id: str,
        resource: str,
        action: str,
        context: dict[str, Any],
        grants: SubjectGrants,
        roles: tuple[str, ...],
        groups: tuple[str, ...],
    ) -> dict[str, Any]:
        now = _utc_now()
        namespaces: dict[str, Any] = {
            "user": {**grants.attributes, "id": user_id, "roles": list(roles), "groups": list(groups)},
            "resource": {"id": resource},
            "action": {"name": action},
            "environment": {
                "time": now.strftime("%H:%M:%S"),
                "date": now.date().isoformat(),
                "timestamp": now.isoformat(),
                "weekday": now.strftime("%A").lower(),
            },
        }
        # Context extends namespaces; non-namespace keys land at the top level.
        for key, value in context.items():
            if isinstance(value, dict) and isinstance(namespaces.get(key), dict):
                namespaces[key] = {**namespaces[key], **value}
            else:
                namespaces[key] = value
        return namespaces

    @staticmethod
    def _apply_attribute_definitions(config: AuthorizationConfig, namespaces: dict[str, Any]) -> None:
        for definition in config.abac.attributes:
            bucket = namespaces.setdefault(definition.source, {})
            if not isinstance(bucket, dict):
                raise AuthorizationEvaluationError(
                    f"Attribute namespace {definition.source} is not an object",
                    attribute=definition.name,
                )
            if bucket.get(definition.name) is not None:
                continue
            if definition.default is not None:
                bucket[definition.name] = definition.default
            elif definition.required:
                raise AuthorizationEvaluationError(
                    f"Missing required attribute {definition.source}.{definition.name}",
                    attribute=f"{definition.source}.{definition.name}",
                )


def _rule_key(policy: Policy, rule: PolicyRule) -> str:
    return f"{policy.id}/{rule.id}"
