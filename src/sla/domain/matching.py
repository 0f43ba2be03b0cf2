"""
SLA Rule Matching
==================

Selects exactly one SLA rule for a ticket context.

Rules are evaluated by ascending ``priority_order``. The first rule that
is not rejected and either scores or is a catch-all wins; when none
does, the last rule in order is the fallback. Score weights only feed
the human-readable match reason.

    VIP override rule   -> matches iff the requester is VIP
    asset importance    -> +3     asset category   -> +2
    VIP user category   -> +2     ticket type      -> +2
    channel             -> +1     priority         -> +1
    wildcard "all"      -> +1 when the attribute is present, never rejects
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from config import ASSET_IMPORTANCE_RANK
from core.exceptions import ConfigurationError, MatchingExhaustedError
from sla.domain.entities import SlaRule, EscalationRule, parse_filter

WILDCARD = "all"
NON_VIP_CATEGORIES = ("regular", "normal", WILDCARD)

IMPORTANCE_WEIGHT = 3
CATEGORY_WEIGHT = 2
VIP_WEIGHT = 2
TYPE_WEIGHT = 2
CHANNEL_WEIGHT = 1
PRIORITY_WEIGHT = 1
WILDCARD_WEIGHT = 1


@dataclass
class MatchContext:
    """Ticket attributes rules are matched against."""
    is_vip: bool = False
    asset_importance: Optional[str] = None
    asset_categories: List[str] = field(default_factory=list)
    ticket_type: Optional[str] = None
    ticket_channel: Optional[str] = None
    ticket_priority: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "is_vip": self.is_vip,
            "asset_importance": self.asset_importance,
            "asset_categories": list(self.asset_categories),
            "ticket_type": self.ticket_type,
            "ticket_channel": self.ticket_channel,
            "ticket_priority": self.ticket_priority,
        }


@dataclass
class RuleMatch:
    """Outcome of rule matching."""
    rule: SlaRule
    escalation_rules: List[EscalationRule]
    reason: str
    score: int
    context: MatchContext
    is_fallback: bool = False


class _Rejected(Exception):
    """Internal signal: a configured filter excludes the context."""


class RuleMatcher:
    """
    Stateless rule selection.

    Usage:
        match = RuleMatcher().match(rules, context, escalation_rules)
        match.rule, match.reason
    """

    def match(
        self,
        rules: Sequence[SlaRule],
        context: MatchContext,
        escalation_rules: Sequence[EscalationRule] = (),
    ) -> RuleMatch:
        """
        Select the rule for ``context``.

        Raises:
            ConfigurationError: If there are no active rules
        """
        active = sorted((r for r in rules if r.is_active), key=lambda r: r.priority_order)
        if not active:
            raise ConfigurationError("No SLA rules configured")

        selected: Optional[SlaRule] = None
        reason = ""
        score = 0
        for rule in active:
            evaluation = self.evaluate(rule, context)
            if evaluation is not None:
                selected = rule
                score, reason = evaluation
                break

        is_fallback = False
        if selected is None:
            selected = active[-1]
            reason = "Default SLA rule"
            is_fallback = True

        if selected is None:
            raise MatchingExhaustedError("Rule matching selected no rule", context.to_dict())

        ladder = sorted(
            (e for e in escalation_rules if e.sla_rule_id == selected.id and e.is_active),
            key=lambda e: e.escalation_level,
        )
        return RuleMatch(
            rule=selected,
            escalation_rules=ladder,
            reason=reason,
            score=score,
            context=context,
            is_fallback=is_fallback,
        )

    def evaluate(self, rule: SlaRule, context: MatchContext) -> Optional[Tuple[int, str]]:
        """
        Score a single rule.

        Returns ``(score, reason)`` when the rule matches, None otherwise.
        """
        if rule.is_vip_override:
            return (VIP_WEIGHT, "VIP user override") if context.is_vip else None

        score = 0
        reasons: List[str] = []
        try:
            score += self._scalar(
                rule.asset_importance, context.asset_importance,
                IMPORTANCE_WEIGHT, "Asset importance", reasons,
            )
            score += self._categories(rule.asset_categories, context.asset_categories, reasons)
            score += self._user_category(rule.user_category, context.is_vip, reasons)
            score += self._scalar(
                rule.ticket_type, context.ticket_type,
                TYPE_WEIGHT, "Ticket type", reasons,
            )
            score += self._scalar(
                rule.ticket_channels, context.ticket_channel,
                CHANNEL_WEIGHT, "Ticket channel", reasons,
            )
            score += self._scalar(
                rule.priority, context.ticket_priority,
                PRIORITY_WEIGHT, "Priority", reasons,
            )
        except _Rejected:
            return None

        if score > 0 or rule.is_catch_all:
            return score, "; ".join(reasons) if reasons else "Default match"
        return None

    # ---------- filters ----------

    @staticmethod
    def _scalar(raw_filter: Optional[str], value: Optional[str], weight: int, label: str, reasons: List[str]) -> int:
        allowed = parse_filter(raw_filter)
        if allowed is None or not value:
            return 0
        if WILDCARD in allowed:
            reasons.append(f"{label} (any): {value}")
            return WILDCARD_WEIGHT
        if value.strip().lower() in allowed:
            reasons.append(f"{label}: {value}")
            return weight
        raise _Rejected()

    @staticmethod
    def _categories(raw_filter: Optional[str], categories: Sequence[str], reasons: List[str]) -> int:
        allowed = parse_filter(raw_filter)
        if allowed is None or not categories:
            return 0
        if WILDCARD in allowed:
            reasons.append(f"Asset category (any): {', '.join(categories)}")
            return WILDCARD_WEIGHT
        matching = [c for c in categories if c.strip().lower() in allowed]
        if matching:
            reasons.append(f"Asset category: {', '.join(matching)}")
            return CATEGORY_WEIGHT
        raise _Rejected()

    @staticmethod
    def _user_category(raw_filter: Optional[str], is_vip: bool, reasons: List[str]) -> int:
        allowed = parse_filter(raw_filter)
        if allowed is None:
            return 0
        if WILDCARD in allowed:
            reasons.append("User category (any)")
            return WILDCARD_WEIGHT
        if is_vip and "vip" in allowed:
            reasons.append("VIP user")
            return VIP_WEIGHT
        if any(c in allowed for c in NON_VIP_CATEGORIES):
            return 0
        raise _Rejected()


def resolve_asset_context(assets) -> Tuple[Optional[str], List[str]]:
    """
    Highest importance and distinct categories among active assets.

    Importance ranks critical > high > medium > low.
    """
    importance: Optional[str] = None
    best = 0
    categories: List[str] = []
    for asset in assets:
        if not asset.is_active:
            continue
        if asset.category and asset.category not in categories:
            categories.append(asset.category)
        rank = ASSET_IMPORTANCE_RANK.get((asset.importance or "").lower(), 0)
        if rank > best:
            best = rank
            importance = asset.importance.lower()
    return importance, categories
