from __future__ import annotations

from typing import Dict, FrozenSet, List


SOLICITADO = "SOLICITADO"
PENDENTE = "PENDENTE"
COMPRADO_ACAMINHO = "COMPRADO_ACAMINHO"
ENTREGUE = "ENTREGUE"
REPROVADO = "REPROVADO"

PURCHASE_STATUSES: List[str] = [SOLICITADO, PENDENTE, COMPRADO_ACAMINHO, ENTREGUE, REPROVADO]
TERMINAL_STATUSES: FrozenSet[str] = frozenset({ENTREGUE, REPROVADO})

# ENTREGUE is the terminal target itself, never a sub-status of the in-transit step.
DELIVERY_SUB_STATUSES: FrozenSet[str] = frozenset({"NAO_ENTREGUE", "PARCIAL", "CANCELADO"})


ACTION_LABELS: Dict[str, str] = {
    "edit": "Editar solicitacao",
    "approve": "Aprovar cotacao",
    "reject": "Reprovar solicitacao",
    "mark_purchased": "Marcar como comprado",
    "update_delivery": "Atualizar entrega",
    "confirm_delivery": "Confirmar entrega",
    "delete": "Excluir solicitacao",
    "view_history": "Ver historico",
}


FLOW_POLICY: Dict[str, Dict[str, object]] = {
    SOLICITADO: {
        "transitions": [PENDENTE, REPROVADO],
        "allowed_actions": ["edit", "approve", "reject", "delete", "view_history"],
        "primary_action": "approve",
    },
    PENDENTE: {
        "transitions": [COMPRADO_ACAMINHO, REPROVADO],
        "allowed_actions": ["approve", "reject", "mark_purchased", "delete", "view_history"],
        "primary_action": "mark_purchased",
    },
    COMPRADO_ACAMINHO: {
        "transitions": [ENTREGUE],
        "allowed_actions": ["update_delivery", "confirm_delivery", "delete", "view_history"],
        "primary_action": "confirm_delivery",
    },
    ENTREGUE: {
        "transitions": [],
        "allowed_actions": ["view_history"],
        "primary_action": "view_history",
    },
    REPROVADO: {
        "transitions": [],
        "allowed_actions": ["view_history"],
        "primary_action": "view_history",
    },
}


def _fallback_policy() -> Dict[str, object]:
    return {"transitions": [], "allowed_actions": [], "primary_action": None}


def status_policy(status: str | None) -> Dict[str, object]:
    if not status:
        return _fallback_policy()
    return FLOW_POLICY.get(str(status), _fallback_policy())


def is_terminal(status: str | None) -> bool:
    return str(status or "") in TERMINAL_STATUSES


def next_statuses(status: str | None) -> List[str]:
    transitions = status_policy(status).get("transitions") or []
    return [str(item) for item in transitions]


def transition_allowed(from_status: str | None, to_status: str | None) -> bool:
    if not to_status:
        return False
    return str(to_status) in set(next_statuses(from_status))


def allowed_actions(status: str | None) -> List[str]:
    actions = status_policy(status).get("allowed_actions") or []
    return [str(action) for action in actions]


def action_allowed(status: str | None, action: str) -> bool:
    if not action:
        return False
    return action in set(allowed_actions(status))


def primary_action(status: str | None) -> str | None:
    action = status_policy(status).get("primary_action")
    if not action:
        return None
    return str(action)


def action_label(action: str, fallback: str | None = None) -> str:
    label = ACTION_LABELS.get(action)
    if label:
        return label
    if fallback is not None:
        return fallback
    return action


def flow_meta(status: str | None) -> Dict[str, object]:
    return {
        "status": status,
        "next_statuses": next_statuses(status),
        "allowed_actions": allowed_actions(status),
        "action_labels": {action: action_label(action) for action in allowed_actions(status)},
        "primary_action": primary_action(status),
    }
