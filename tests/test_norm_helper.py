"""Tests for model-reply normalization (fences, JSON recovery, provenance)."""

import json
import time

import pytest

from hvac_scanner.extraction.errors import ParseError
from hvac_scanner.extraction.norm_helper import (
    normalize_equipment_analysis,
    normalize_label_scan,
    normalize_recommendations,
    parse_model_json,
    strip_code_fence,
)
from hvac_scanner.extraction.schemas import (
    RECORD_META_FIELDS,
    EquipmentType,
    FailureType,
    FieldSource,
    MaintenanceUrgency,
    OverallCondition,
    Severity,
)

from conftest import ANALYSIS_REPLY, LABEL_REPLY


def _label(structured=None, **payload) -> str:
    body = {"structuredData": structured or {}}
    body.update(payload)
    return json.dumps(body)


class TestStripCodeFence:
    def test_json_fence(self):
        assert strip_code_fence('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_untagged_fence(self):
        assert strip_code_fence('```\n{"a": 1}\n```') == '{"a": 1}'

    def test_other_language_tag(self):
        assert strip_code_fence('```javascript\n{"a": 1}\n```') == '{"a": 1}'

    def test_missing_closing_marker(self):
        assert strip_code_fence('```json\n{"a": 1}') == '{"a": 1}'

    def test_missing_opening_marker(self):
        assert strip_code_fence('{"a": 1}\n```') == '{"a": 1}'

    def test_plain_text_untouched(self):
        assert strip_code_fence('  {"a": 1}  ') == '{"a": 1}'

    def test_none_is_empty(self):
        assert strip_code_fence(None) == ""


class TestParseModelJson:
    def test_fenced_object(self):
        assert parse_model_json('```json\n{"brand": "Trane"}\n```') == {"brand": "Trane"}

    def test_object_embedded_in_prose(self):
        text = 'Here is what I found on the label: {"brand": "Lennox", "confidence": 0.8} Hope that helps!'
        assert parse_model_json(text) == {"brand": "Lennox", "confidence": 0.8}

    def test_unparseable_raises_with_excerpt(self):
        with pytest.raises(ParseError) as info:
            parse_model_json("not json at all")
        assert info.value.code == "model_output_unparseable"
        assert info.value.excerpt == "not json at all"

    def test_excerpt_is_truncated(self):
        with pytest.raises(ParseError) as info:
            parse_model_json("x" * 500)
        assert len(info.value.excerpt) == 200

    def test_top_level_array_is_not_an_object(self):
        with pytest.raises(ParseError):
            parse_model_json("[1, 2, 3]")

    def test_broken_braces_raise(self):
        with pytest.raises(ParseError):
            parse_model_json('{"brand": "Goodman", ')

    def test_parse_error_is_value_error(self):
        with pytest.raises(ValueError):
            parse_model_json("")


class TestNormalizeLabelScan:
    def test_full_reply(self):
        outcome = normalize_label_scan(LABEL_REPLY)
        rec = outcome.extracted_data
        assert outcome.confidence == 0.9
        assert rec.brand == "Carrier"
        assert rec.serial_number == "1234E56789"
        assert rec.btu == 36000
        assert rec.equipment_type is EquipmentType.AIR_CONDITIONER
        assert rec.amperage is None
        assert outcome.raw_text.startswith("CARRIER MODEL")

    def test_record_is_unsaved(self):
        rec = normalize_label_scan(LABEL_REPLY).extracted_data
        assert rec.id == ""
        assert rec.created_at == rec.updated_at

    def test_explicit_metadata_preserved(self):
        meta = normalize_label_scan(LABEL_REPLY).extracted_data.field_metadata
        assert meta["capacity"].source is FieldSource.AI_INFERRED
        assert meta["capacity"].confidence == 0.7
        assert meta["capacity"].inference_basis == "model number -36 = 36,000 BTU"

    def test_missing_metadata_synthesized_from_overall_confidence(self):
        meta = normalize_label_scan(LABEL_REPLY).extracted_data.field_metadata
        for key in ("brand", "model", "serialNumber", "btu", "refrigerantType", "voltage", "equipmentType"):
            assert meta[key].source is FieldSource.SCANNED
            assert meta[key].confidence == 0.9

    def test_null_fields_get_no_provenance(self):
        meta = normalize_label_scan(LABEL_REPLY).extracted_data.field_metadata
        assert "amperage" not in meta

    def test_every_populated_field_has_provenance(self):
        rec = normalize_label_scan(LABEL_REPLY).extracted_data
        assert set(rec.populated_fields()) <= set(rec.field_metadata)

    def test_confidence_defaults_when_omitted(self):
        outcome = normalize_label_scan(_label({"brand": "Rheem"}))
        assert outcome.confidence == 0.6
        assert outcome.extracted_data.field_metadata["brand"].confidence == 0.8

    def test_out_of_range_confidence_treated_as_missing(self):
        outcome = normalize_label_scan(_label({"brand": "Rheem"}, confidence=1.7))
        assert outcome.confidence == 0.6
        assert outcome.extracted_data.field_metadata["brand"].confidence == 0.8

    def test_non_numeric_confidence_treated_as_missing(self):
        outcome = normalize_label_scan(_label({"brand": "Rheem"}, confidence="high"))
        assert outcome.confidence == 0.6

    def test_explicit_entry_without_confidence_left_alone(self):
        outcome = normalize_label_scan(_label(
            {"brand": "York"},
            fieldMetadata={"brand": {"source": "scanned"}},
            confidence=0.5,
        ))
        assert outcome.extracted_data.field_metadata["brand"].confidence is None

    def test_out_of_range_entry_confidence_falls_back(self):
        outcome = normalize_label_scan(_label(
            {"brand": "York"},
            fieldMetadata={"brand": {"source": "scanned", "confidence": 4}},
            confidence=0.5,
        ))
        assert outcome.extracted_data.field_metadata["brand"].confidence == 0.5

    def test_inference_basis_dropped_for_scanned_source(self):
        outcome = normalize_label_scan(_label(
            {"brand": "York"},
            fieldMetadata={"brand": {"source": "scanned", "confidence": 0.9, "inferenceBasis": "logo"}},
        ))
        assert outcome.extracted_data.field_metadata["brand"].inference_basis is None

    def test_fenced_reply(self):
        outcome = normalize_label_scan("```json\n" + LABEL_REPLY + "\n```")
        assert outcome.extracted_data.brand == "Carrier"

    def test_structured_data_missing(self):
        outcome = normalize_label_scan(json.dumps({"extractedText": "blurry", "confidence": 0.1}))
        assert outcome.confidence == 0.1
        assert outcome.extracted_data.populated_fields() == {}
        assert outcome.extracted_data.field_metadata == {}

    def test_structured_data_not_mapping(self):
        outcome = normalize_label_scan(json.dumps({"structuredData": ["Carrier"], "confidence": 0.4}))
        assert outcome.extracted_data.populated_fields() == {}

    def test_unknown_keys_kept(self):
        outcome = normalize_label_scan(_label({"brand": "Trane", "phase": "3"}, confidence=0.8))
        rec = outcome.extracted_data
        assert rec.model_extra["phase"] == "3"
        assert rec.field_metadata["phase"].confidence == 0.8

    def test_reserved_keys_ignored(self):
        outcome = normalize_label_scan(_label({"id": "abc", "createdAt": "1999-01-01", "brand": "Bryant"}))
        rec = outcome.extracted_data
        assert rec.id == ""
        assert rec.created_at.year != 1999
        assert "id" not in rec.field_metadata

    def test_lenient_values(self):
        outcome = normalize_label_scan(_label({
            "btu": "36,000 BTU/h",
            "seerRating": "SEER 16",
            "manufactureDate": "2015-06",
            "equipmentType": "Heat Pump",
            "capacity": 3,
        }))
        rec = outcome.extracted_data
        assert rec.btu == 36000
        assert rec.seer_rating == 16.0
        assert rec.manufacture_date.isoformat() == "2015-06-01"
        assert rec.equipment_type is EquipmentType.HEAT_PUMP
        assert rec.capacity == "3"

    def test_unknown_equipment_type_becomes_other(self):
        rec = normalize_label_scan(_label({"equipmentType": "boiler"})).extracted_data
        assert rec.equipment_type is EquipmentType.OTHER

    def test_unreadable_number_becomes_none(self):
        rec = normalize_label_scan(_label({"btu": "illegible", "brand": "Lennox"})).extracted_data
        assert rec.btu is None
        assert "btu" not in rec.field_metadata
        assert set(rec.field_metadata) == {"brand"}

    def test_unreadable_date_gets_no_provenance(self):
        rec = normalize_label_scan(_label({"manufactureDate": "sometime in spring"})).extracted_data
        assert rec.manufacture_date is None
        assert rec.field_metadata == {}

    def test_nameplate_date_forms(self):
        rec = normalize_label_scan(_label({"manufactureDate": "06/2015"})).extracted_data
        assert rec.manufacture_date.isoformat() == "2015-06-01"
        assert rec.field_metadata["manufactureDate"].source is FieldSource.SCANNED
        rec = normalize_label_scan(_label({"manufactureDate": "2015"})).extracted_data
        assert rec.manufacture_date.isoformat() == "2015-01-01"

    def test_overflowing_number_becomes_none(self):
        rec = normalize_label_scan('{"structuredData": {"btu": 1e400, "brand": "Rheem"}}').extracted_data
        assert rec.btu is None
        assert rec.brand == "Rheem"
        assert "btu" not in rec.field_metadata

    def test_snake_case_keys_keyed_by_wire_name(self):
        rec = normalize_label_scan(_label(
            {"serial_number": "X1", "refrigerant_type": "R-22"},
            fieldMetadata={"serial_number": {"source": "ai_inferred", "confidence": 0.5, "inferenceBasis": "sticker"}},
            confidence=0.7,
        )).extracted_data
        assert rec.serial_number == "X1"
        assert rec.field_metadata["serialNumber"].source is FieldSource.AI_INFERRED
        assert rec.field_metadata["serialNumber"].inference_basis == "sticker"
        assert rec.field_metadata["refrigerantType"].confidence == 0.7
        assert "serial_number" not in rec.field_metadata
        assert set(rec.populated_fields()) <= set(rec.field_metadata)

    def test_metadata_for_missing_field_dropped(self):
        rec = normalize_label_scan(_label(
            {"brand": "York"},
            fieldMetadata={"model": {"source": "scanned", "confidence": 0.9}},
        )).extracted_data
        assert set(rec.field_metadata) == {"brand"}

    def test_blank_tokens_become_none(self):
        rec = normalize_label_scan(_label({"brand": "N/A", "model": "unknown", "serialNumber": ""})).extracted_data
        assert rec.brand is None and rec.model is None and rec.serial_number is None
        assert rec.field_metadata == {}

    def test_extracted_text_non_string(self):
        outcome = normalize_label_scan(_label({}, extractedText=["LINE 1", "LINE 2"]))
        assert outcome.raw_text == '["LINE 1", "LINE 2"]'

    def test_processing_time(self):
        outcome = normalize_label_scan(LABEL_REPLY, requested_at=time.time() - 0.25)
        assert outcome.processing_time_ms >= 250

    def test_structured_values_round_trip(self):
        structured = {
            "brand": "Carrier",
            "model": "24ACC636A003",
            "serialNumber": "1234E56789",
            "capacity": "3 tons",
            "btu": 36000,
            "manufactureDate": "2015-06-01",
            "refrigerantType": "R-410A",
            "seerRating": 16.0,
            "equipmentType": "air_conditioner",
        }
        rec = normalize_label_scan(_label(structured, confidence=0.9)).extracted_data
        dumped = rec.model_dump(by_alias=True, exclude_unset=True, exclude=RECORD_META_FIELDS, mode="json")
        assert dumped == structured

    def test_unparseable_reply(self):
        with pytest.raises(ParseError):
            normalize_label_scan("I could not read the label, sorry.")


class TestNormalizeEquipmentAnalysis:
    def test_full_reply(self):
        analysis = normalize_equipment_analysis(ANALYSIS_REPLY)
        assert analysis.equipment_type == "Split_System"
        assert analysis.overall_condition is OverallCondition.FAIR
        assert analysis.maintenance_urgency is MaintenanceUrgency.WITHIN_MONTH
        assert len(analysis.failures) == 2
        first = analysis.failures[0]
        assert first.type is FailureType.CORROSION
        assert first.severity is Severity.MEDIUM
        assert first.recommendations == ["Wire brush and treat the base pan"]
        assert first.id
        assert analysis.general_recommendations == ["Schedule coil cleaning", "Re-check in six months"]
        assert analysis.highest_severity() is Severity.MEDIUM

    def test_missing_lists_default_empty(self):
        analysis = normalize_equipment_analysis('{"condition": "good"}')
        assert analysis.failures == []
        assert analysis.general_recommendations == []
        assert analysis.maintenance_urgency is None

    def test_analysis_embedded_in_prose(self):
        analysis = normalize_equipment_analysis(
            'Some text before {"equipmentType":"RTU","failures":[],"condition":"good",'
            '"urgency":"none","recommendations":[]} trailing'
        )
        assert analysis.equipment_type == "RTU"
        assert analysis.failures == []
        assert analysis.overall_condition is OverallCondition.GOOD
        assert analysis.maintenance_urgency is MaintenanceUrgency.NONE
        assert analysis.general_recommendations == []

    def test_condition_never_guessed(self):
        analysis = normalize_equipment_analysis('{"failures": []}')
        assert analysis.overall_condition is None

    def test_loose_spellings(self):
        analysis = normalize_equipment_analysis(json.dumps({
            "condition": "Poor",
            "urgency": "Within Week",
            "failures": [{"type": "Refrigerant Leak", "severity": "HIGH", "description": "Oil stain"}],
        }))
        assert analysis.overall_condition is OverallCondition.POOR
        assert analysis.maintenance_urgency is MaintenanceUrgency.WITHIN_WEEK
        assert analysis.failures[0].type is FailureType.REFRIGERANT_LEAK
        assert analysis.failures[0].severity is Severity.HIGH

    def test_unknown_values(self):
        analysis = normalize_equipment_analysis(json.dumps({
            "condition": "meh",
            "failures": [{"type": "rust", "severity": "catastrophic", "description": "x"}],
        }))
        assert analysis.overall_condition is None
        assert analysis.failures[0].type is FailureType.OTHER
        assert analysis.failures[0].severity is None

    def test_bare_string_failure(self):
        analysis = normalize_equipment_analysis('{"failures": ["Bent fins on the north side"]}')
        assert analysis.failures[0].description == "Bent fins on the north side"
        assert analysis.failures[0].type is FailureType.OTHER

    def test_failures_not_a_list(self):
        analysis = normalize_equipment_analysis('{"failures": "none"}')
        assert analysis.failures == []

    def test_failure_confidence_out_of_range_dropped(self):
        analysis = normalize_equipment_analysis('{"failures": [{"description": "x", "confidence": 3}]}')
        assert analysis.failures[0].confidence is None

    def test_unparseable(self):
        with pytest.raises(ParseError):
            normalize_equipment_analysis("The unit looks fine.")


class TestNormalizeRecommendations:
    def test_bare_array(self):
        assert normalize_recommendations('["a", "b"]') == ["a", "b"]

    def test_fenced_array(self):
        assert normalize_recommendations('```json\n["a"]\n```') == ["a"]

    def test_object_form(self):
        assert normalize_recommendations('{"recommendations": ["x", "y"]}') == ["x", "y"]

    def test_array_in_prose(self):
        assert normalize_recommendations('Sure! ["Replace the capacitor"] Let me know.') == ["Replace the capacitor"]

    def test_blank_items_skipped(self):
        assert normalize_recommendations('["a", "", null, "b"]') == ["a", "b"]

    def test_garbage(self):
        with pytest.raises(ParseError):
            normalize_recommendations("no list here")

    def test_object_without_recommendations(self):
        with pytest.raises(ParseError):
            normalize_recommendations('{"advice": "call a tech"}')
