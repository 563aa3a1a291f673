"""Central prompt templates for the vision model calls.

Separate module so the pipeline stays lean and prompt strategies can evolve
independently. The JSON shapes described here are what norm_helper expects;
change both together.
"""
from datetime import date
from typing import List, Optional, Sequence

LABEL_SCAN_PROMPT = """You are an HVAC service expert reading equipment nameplates (rating labels).

Analyze this HVAC equipment label image and extract ALL visible information.

Look specifically for:
- Brand / manufacturer
- Model
- Serial number
- Capacity (tons or BTU)
- Manufacturing date
- Voltage
- Amperage (RLA, FLA, MCA)
- Refrigerant type (R-22, R-410A, R-32, ...)
- SEER / EER efficiency
- Equipment type (air conditioner, heat pump, furnace, ductwork, other)

CAPACITY INFERENCE:
If the capacity in tons is NOT written on the label but can be inferred:
1. From the model number (many model numbers encode nominal capacity, e.g. "-24" = 24,000 BTU = 2 tons)
2. Or by converting BTU to tons (12,000 BTU = 1 ton)
Mark any such value as ai_inferred and explain the derivation in inferenceBasis.

OUTPUT CONTRACT:
Respond ONLY with valid JSON. No markdown, no code fences, no prose.
{
  "extractedText": "all visible text on the label",
  "structuredData": {
    "brand": "string or null",
    "model": "string or null",
    "serialNumber": "string or null",
    "capacity": "capacity with units or null",
    "btu": integer_or_null,
    "manufactureDate": "YYYY-MM-DD or null",
    "voltage": "voltage with units or null",
    "amperage": "amperage with units or null",
    "refrigerantType": "string or null",
    "seerRating": decimal_or_null,
    "eerRating": decimal_or_null,
    "equipmentType": "air_conditioner|heat_pump|furnace|ductwork|other or null"
  },
  "fieldMetadata": {
    "<fieldName>": {"source": "scanned|ai_inferred", "confidence": 0.0-1.0, "inferenceBasis": "only when ai_inferred"}
  },
  "confidence": number_between_0_and_1
}

In fieldMetadata, include an entry for every field that has data:
- "scanned": the value is clearly printed on the label
- "ai_inferred": the value was derived (e.g. capacity from model or BTU)
If you cannot read something clearly, use null. Be conservative with confidence.
""".strip()

EQUIPMENT_ANALYSIS_PROMPT = """You are an HVAC service expert inspecting photographs of installed equipment.

FIRST identify the type of HVAC equipment:
- RTU (rooftop unit), Split System (outdoor condensing unit), Mini Split, Heat Pump,
  Package Unit, Chiller, Furnace, Air Handler, Other

Then look specifically for:
- Visible corrosion on metal components
- Refrigerant leaks (oil stains, crystals)
- Coil damage (bent fins, heavy dirt)
- Dirty or missing filters
- Airflow blockages
- Electrical damage (stripped wires, loose connections)
- Missing or visibly damaged components
- General wear and deterioration
- Installation problems

Evaluate overall condition and maintenance urgency and give specific recommendations.

OUTPUT CONTRACT:
Respond ONLY with valid JSON. No markdown, no code fences, no prose.
{
  "equipmentType": "RTU|Split_System|Mini_Split|Heat_Pump|Package_Unit|Chiller|Furnace|Air_Handler|Other",
  "equipmentDescription": "description of the identified equipment",
  "failures": [
    {
      "type": "corrosion|refrigerant_leak|damaged_coils|dirty_filter|blocked_airflow|electrical_damage|missing_component|wear_and_tear|improper_installation|other",
      "severity": "low|medium|high|critical",
      "description": "detailed description of the problem",
      "location": "where on the unit, or null",
      "confidence": number_between_0_and_1,
      "recommendations": ["recommendation 1", "recommendation 2"]
    }
  ],
  "condition": "excellent|good|fair|poor|critical",
  "urgency": "immediate|within_week|within_month|routine|none",
  "recommendations": ["general recommendation 1", "general recommendation 2"]
}
Use an empty failures list when nothing is wrong. Be specific and conservative with confidence.
""".strip()

RECOMMENDATIONS_PROMPT_BASE = """You are an HVAC expert writing repair guidance for a field technician.

Provide specific, realistic recommendations ordered by priority. Include:
- Specific repair steps
- Required tools and materials
- Time estimates
- Safety considerations
- When to call a specialist

Respond ONLY with a JSON array of strings, each a complete recommendation:
["detailed recommendation 1", "detailed recommendation 2"]
""".strip()

LABEL_SCAN_TASK = "Extract the nameplate data from this label photo."
EQUIPMENT_ANALYSIS_TASK = "Inspect these equipment photos and report condition and failures."


def _age_text(manufacture_date: Optional[date], today: Optional[date] = None) -> str:
    if manufacture_date is None:
        return "Unknown"
    years = (today or date.today()).year - manufacture_date.year
    return f"{years} years"


def build_recommendations_prompt(equipment, failures: Sequence, today: Optional[date] = None) -> str:
    """Return the user message for the detailed-recommendations call.

    equipment is an EquipmentRecord (or None for unidentified units); failures
    are FailureFinding objects from the inspection.
    """
    lines: List[str] = [
        f"Equipment: {(equipment and equipment.brand) or 'Unknown'} {(equipment and equipment.model) or ''}".rstrip(),
        f"Type: {(equipment and equipment.equipment_type and equipment.equipment_type.value) or 'Unknown'}",
        f"Capacity: {(equipment and equipment.capacity) or 'Unknown'}",
        f"Refrigerant: {(equipment and equipment.refrigerant_type) or 'Unknown'}",
        f"Age: {_age_text(equipment.manufacture_date if equipment else None, today)}",
        "",
        "Detected problems:",
    ]
    if failures:
        for f in failures:
            severity = f.severity.value if f.severity else "unrated"
            lines.append(f"- {f.type.value} ({severity}): {f.description}")
    else:
        lines.append("- none reported (give preventive maintenance guidance)")
    return "\n".join(lines)
