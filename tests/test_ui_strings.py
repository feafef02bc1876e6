import unittest

from erp_ops.procurement.flow_policy import DELIVERY_SUB_STATUSES, PURCHASE_STATUSES
from erp_ops.ui_strings import (
    MESSAGES,
    STATUS_GROUPS,
    error_message,
    get_message,
    status_keys_for_group,
    status_label,
    success_message,
)


class UiStringsStatusGroupsTest(unittest.TestCase):
    def test_purchase_statuses_match_flow_policy(self) -> None:
        self.assertEqual(status_keys_for_group("compra"), PURCHASE_STATUSES)

    def test_delivery_sub_statuses_match_flow_policy(self) -> None:
        self.assertEqual(set(status_keys_for_group("entrega")), set(DELIVERY_SUB_STATUSES))

    def test_status_labels_and_descriptions_are_not_empty(self) -> None:
        for group_name, statuses in STATUS_GROUPS.items():
            for status in statuses:
                self.assertTrue((status.get("label") or "").strip(), f"label vazio em {group_name}:{status.get('key')}")
                self.assertTrue(
                    (status.get("description") or "").strip(),
                    f"descricao vazia em {group_name}:{status.get('key')}",
                )

    def test_status_label_falls_back_to_key(self) -> None:
        self.assertEqual(status_label("COMPRADO_ACAMINHO"), "Comprado / a caminho")
        self.assertEqual(status_label("DESCONHECIDO"), "DESCONHECIDO")


class UiStringsMessagesTest(unittest.TestCase):
    def test_lookup_with_default(self) -> None:
        self.assertEqual(error_message("permission_denied"), MESSAGES["error"]["permission_denied"])
        self.assertEqual(success_message("missing_key", "fallback"), "fallback")
        self.assertEqual(get_message("error", "missing_key", "fallback"), "fallback")

    def test_messages_are_not_empty(self) -> None:
        for category, messages in MESSAGES.items():
            for key, text in messages.items():
                self.assertTrue(text.strip(), f"mensagem vazia em {category}:{key}")


if __name__ == "__main__":
    unittest.main()
