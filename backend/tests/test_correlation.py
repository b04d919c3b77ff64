"""
Unit tests for the booking -> appointment correlation table.
"""

import pytest

from app.config import CorrelationFields
from app.services.correlation import CorrelationTable, format_id_list, parse_id_list

FIELDS = CorrelationFields()


# ---------------------------------------------------------------------------
# Stored list parsing
# ---------------------------------------------------------------------------

class TestParseIdList:

    def test_comma_separated(self):
        assert parse_id_list("B1, B2 ,,B3") == ["B1", "B2", "B3"]

    def test_legacy_json_array(self):
        assert parse_id_list('["B1", "B2"]') == ["B1", "B2"]

    def test_single_numeric_id(self):
        assert parse_id_list("123") == ["123"]

    def test_list_value(self):
        assert parse_id_list(["a", None, " ", 5]) == ["a", "5"]

    @pytest.mark.parametrize("value", [None, "", "   ", 42, {"a": 1}])
    def test_empty_or_unusable(self, value):
        assert parse_id_list(value) == []

    def test_format_drops_blanks(self):
        assert format_id_list(["a", "", "b"]) == "a,b"


# ---------------------------------------------------------------------------
# Table behaviour
# ---------------------------------------------------------------------------

class TestCorrelationTable:

    def test_from_field_values_pairs_by_position(self):
        table = CorrelationTable.from_field_values("B1,B2", "evt1,evt2")
        assert table.find("B2") == "evt2"
        assert table.find("B3") is None
        assert list(table) == [("B1", "evt1"), ("B2", "evt2")]

    def test_unequal_lists_drop_unpaired_entries(self):
        table = CorrelationTable.from_field_values("B1,B2,B3", "evt1")
        assert len(table) == 1
        assert table.booking_ids == ["B1"]
        assert table.appointment_ids == ["evt1"]

    def test_duplicate_booking_ids_keep_first(self):
        table = CorrelationTable.from_field_values("B1,B1", "evt1,evt2")
        assert len(table) == 1
        assert table.find("B1") == "evt1"

    def test_add_is_idempotent_for_known_booking(self):
        table = CorrelationTable([("B1", "evt1")])
        assert table.add("B1", "evt-other") is False
        assert table.find("B1") == "evt1"
        assert table.add("B2", "evt2") is True
        assert table.to_field_values() == ("B1,B2", "evt1,evt2")

    def test_add_accepts_numeric_ids(self):
        table = CorrelationTable()
        table.add(77, "evt1")
        assert 77 in table
        assert "77" in table

    def test_add_rejects_empty_ids(self):
        with pytest.raises(ValueError):
            CorrelationTable().add("B1", "")

    def test_remove_keeps_lists_aligned(self):
        table = CorrelationTable.from_field_values("B1,B2,B3", "evt1,evt2,evt3")
        assert table.remove("B2") == "evt2"
        assert table.to_field_values() == ("B1,B3", "evt1,evt3")
        assert len(table.booking_ids) == len(table.appointment_ids)

    def test_remove_unknown_returns_none(self):
        table = CorrelationTable([("B1", "evt1")])
        assert table.remove("B9") is None
        assert len(table) == 1

    def test_remove_last_pair_yields_empty_strings(self):
        table = CorrelationTable([("B1", "evt1")])
        table.remove("B1")
        assert table.to_field_values() == ("", "")


# ---------------------------------------------------------------------------
# CRM boundary
# ---------------------------------------------------------------------------

class TestContactFields:

    def test_from_contact_by_field_id(self):
        contact = {
            "customFields": [
                {"id": FIELDS.booking_ids_id, "value": "B1,B2"},
                {"id": FIELDS.appointment_ids_id, "value": "evt1,evt2"},
                {"id": "other", "value": "ignored"},
            ]
        }
        table = CorrelationTable.from_contact(contact, FIELDS)
        assert table.find("B1") == "evt1"
        assert len(table) == 2

    def test_from_contact_by_field_key(self):
        contact = {
            "customFields": [
                {"fieldKey": FIELDS.booking_ids_key, "fieldValue": '["B1"]'},
                {"fieldKey": FIELDS.appointment_ids_key, "fieldValue": '["evt1"]'},
            ]
        }
        assert CorrelationTable.from_contact(contact, FIELDS).find("B1") == "evt1"

    def test_from_contact_without_fields(self):
        assert len(CorrelationTable.from_contact({}, FIELDS)) == 0
        assert len(CorrelationTable.from_contact({"customFields": None}, FIELDS)) == 0

    def test_to_custom_fields(self):
        table = CorrelationTable([("B1", "evt1"), ("B2", "evt2")])
        assert table.to_custom_fields(FIELDS) == [
            {"id": FIELDS.appointment_ids_id, "field_value": "evt1,evt2"},
            {"id": FIELDS.booking_ids_id, "field_value": "B1,B2"},
        ]
