from __future__ import annotations

from typing import Dict, List


FRIENDLY_TERMS: Dict[str, str] = {
    "app_name": "ERP Operacoes",
    "purchase_request": "Solicitacao de compra",
    "quotation": "Cotacao",
    "stock_item": "Item de estoque",
    "allocation": "Alocacao",
    "role": "Cargo",
    "permission": "Permissao",
}


STATUS_GROUPS: Dict[str, List[Dict[str, str]]] = {
    "compra": [
        {
            "key": "SOLICITADO",
            "label": "Solicitado",
            "description": "Solicitacao registrada aguardando analise do aprovador.",
        },
        {
            "key": "PENDENTE",
            "label": "Pendente de compra",
            "description": "Cotacao aprovada, compra ainda nao realizada.",
        },
        {
            "key": "COMPRADO_ACAMINHO",
            "label": "Comprado / a caminho",
            "description": "Compra realizada, aguardando entrega.",
        },
        {
            "key": "ENTREGUE",
            "label": "Entregue",
            "description": "Material recebido e incorporado ao estoque.",
        },
        {
            "key": "REPROVADO",
            "label": "Reprovado",
            "description": "Solicitacao encerrada pelo aprovador com motivo registrado.",
        },
    ],
    "entrega": [
        {
            "key": "NAO_ENTREGUE",
            "label": "Nao entregue",
            "description": "Nenhuma parte do pedido chegou.",
        },
        {
            "key": "PARCIAL",
            "label": "Entrega parcial",
            "description": "Parte do pedido foi recebida.",
        },
        {
            "key": "CANCELADO",
            "label": "Cancelado pelo fornecedor",
            "description": "Fornecedor cancelou a entrega.",
        },
    ],
}


MESSAGES: Dict[str, Dict[str, str]] = {
    "error": {
        "action_not_allowed_for_status": "Esta acao nao e permitida para o status atual.",
        "allocation_not_found": "Alocacao nao encontrada.",
        "allocation_owner_required": "Informe um projeto, etapa, usuario ou solicitacao para alocar o item.",
        "conflict": "O registro foi alterado por outra operacao. Atualize e tente novamente.",
        "delivery_date_required": "Informe a data de entrega.",
        "insufficient_stock": "Quantidade solicitada excede a quantidade disponivel em estoque.",
        "invalid_quotation": "Cotacao invalida. Revise valores e quantidade.",
        "invalid_request": "Dados informados sao invalidos.",
        "item_has_allocations": "Item possui alocacoes ativas e nao pode ser excluido.",
        "item_name_required": "Informe o nome do item.",
        "field_not_editable": "Campo nao pode ser editado.",
        "not_found": "Registro nao encontrado.",
        "page_unknown": "Pagina informada nao existe no catalogo.",
        "permission_denied": "Voce nao possui permissao para executar esta acao.",
        "permission_invalid": "Formato de permissao invalido.",
        "permission_unknown": "Permissoes nao encontradas no catalogo.",
        "purchase_request_not_found": "Solicitacao nao encontrada.",
        "purchase_request_not_editable": "A solicitacao so pode ser editada antes da aprovacao.",
        "purchase_request_terminal": "Solicitacao encerrada nao pode ser alterada ou excluida.",
        "quantity_below_allocated": "A quantidade nao pode ser menor que a quantidade ja alocada.",
        "quantity_invalid": "Quantidade invalida.",
        "quotation_link_required": "Informe o link de ao menos uma cotacao.",
        "quotation_price_required": "Toda cotacao precisa de valor unitario positivo.",
        "quotations_required": "Informe ao menos uma cotacao para aprovar.",
        "reason_required": "Motivo da reprovacao e obrigatorio.",
        "role_in_use": "Cargo em uso por usuarios. Desative-o em vez de excluir.",
        "role_name_required": "Informe o nome do cargo.",
        "role_not_found": "Cargo nao encontrado.",
        "selected_index_invalid": "Cotacao selecionada invalida.",
        "status_invalid": "Status informado e invalido para esta etapa.",
        "stock_item_not_found": "Item de estoque nao encontrado.",
        "sub_status_invalid": "Status de entrega invalido.",
        "unexpected_error": "Nao foi possivel concluir a operacao. Tente novamente em instantes.",
        "user_not_found": "Usuario nao encontrado.",
    },
    "success": {
        "purchase_request_created": "Solicitacao registrada.",
        "purchase_request_updated": "Solicitacao atualizada.",
        "purchase_request_approved": "Solicitacao aprovada.",
        "purchase_request_rejected": "Solicitacao reprovada.",
        "purchase_request_advanced": "Status da compra atualizado.",
        "stock_allocated": "Item alocado.",
        "stock_released": "Alocacao removida.",
    },
}


def status_keys_for_group(group: str) -> List[str]:
    return [item["key"] for item in STATUS_GROUPS.get(group, [])]


def build_status_labels() -> Dict[str, str]:
    labels: Dict[str, str] = {}
    for group_items in STATUS_GROUPS.values():
        for item in group_items:
            labels[item["key"]] = item["label"]
    return labels


STATUS_LABELS = build_status_labels()


def get_message(category: str, key: str, default: str | None = None) -> str:
    message = MESSAGES.get(category, {}).get(key)
    if message:
        return message
    if default is not None:
        return default
    return key


def error_message(key: str, default: str | None = None) -> str:
    return get_message("error", key, default)


def success_message(key: str, default: str | None = None) -> str:
    return get_message("success", key, default)


def status_label(status: str | None) -> str:
    key = str(status or "").strip()
    return STATUS_LABELS.get(key, key)
