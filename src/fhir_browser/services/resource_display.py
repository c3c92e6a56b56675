from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

from .bundle import Bundle

SEARCHABLE_RESOURCES = (
    'Patient',
    'Practitioner',
    'Organization',
    'Observation',
    'Condition',
    'Medication',
    'MedicationRequest',
    'Encounter',
    'AllergyIntolerance',
    'Procedure',
    'Immunization',
    'DiagnosticReport',
)

# Search parameter used for the free-text box; anything else searches by _id.
_TERM_PARAM = {
    'Patient': 'name',
    'Practitioner': 'name',
    'Organization': 'name',
    'Observation': 'code',
}

# Icon names (feather/lucide set) and accent colours, purely cosmetic.
_ICONS = {
    'Patient': ('user', 'blue'),
    'Practitioner': ('user', 'green'),
    'Organization': ('building', 'purple'),
    'Observation': ('activity', 'cyan'),
    'Condition': ('heart', 'red'),
    'Medication': ('pill', 'yellow'),
    'MedicationRequest': ('file-text', 'orange'),
    'Encounter': ('stethoscope', 'indigo'),
    'AllergyIntolerance': ('alert-triangle', 'red'),
    'Procedure': ('activity', 'blue'),
    'Immunization': ('syringe', 'green'),
    'DiagnosticReport': ('file-bar-chart', 'purple'),
}

# Where each type keeps its display text; first CodeableConcept that yields text wins.
_CONCEPT_FIELD = {
    'Observation': 'code',
    'Condition': 'code',
    'Medication': 'code',
    'AllergyIntolerance': 'code',
    'Procedure': 'code',
    'DiagnosticReport': 'code',
    'MedicationRequest': 'medicationCodeableConcept',
    'Immunization': 'vaccineCode',
}

_UNNAMED = {
    'Organization': 'Unnamed Organization',
    'Observation': 'Unnamed Observation',
    'Condition': 'Unnamed Condition',
    'Medication': 'Unnamed Medication',
    'MedicationRequest': 'Unnamed Medication Request',
    'Encounter': 'Unnamed Encounter',
    'AllergyIntolerance': 'Unnamed Allergy',
    'Procedure': 'Unnamed Procedure',
    'Immunization': 'Unnamed Immunization',
    'DiagnosticReport': 'Unnamed Report',
}


def search_params_for(resource_type: str, term: Optional[str]) -> Dict[str, str]:
    term = (term or '').strip()
    if not term:
        return {}
    return {_TERM_PARAM.get(resource_type, '_id'): term}


def resource_icon(resource_type: Optional[str]) -> Dict[str, str]:
    icon, color = _ICONS.get(str(resource_type or ''), ('file-text', 'gray'))
    return {'icon': icon, 'color': color}


def format_human_name(name: Any) -> str:
    if not isinstance(name, Mapping):
        return 'Unnamed'
    if name.get('text'):
        return str(name['text'])
    parts: List[str] = []
    for key in ('prefix', 'given'):
        vals = name.get(key) or []
        if vals:
            parts.append(' '.join(str(v) for v in vals))
    if name.get('family'):
        parts.append(str(name['family']))
    suffix = name.get('suffix') or []
    if suffix:
        parts.append(' '.join(str(v) for v in suffix))
    return ' '.join(parts).strip() or 'Unnamed'


def concept_text(concept: Any) -> Optional[str]:
    if not isinstance(concept, Mapping):
        return None
    if concept.get('text'):
        return str(concept['text'])
    codings = concept.get('coding') or []
    if codings and isinstance(codings[0], Mapping) and codings[0].get('display'):
        return str(codings[0]['display'])
    return None


def resource_name(resource: Mapping[str, Any]) -> str:
    rtype = resource.get('resourceType')
    if rtype in ('Patient', 'Practitioner'):
        names = resource.get('name') or []
        if names:
            return format_human_name(names[0])
        return 'Unnamed'
    if rtype == 'Organization':
        return str(resource.get('name') or _UNNAMED['Organization'])
    if rtype == 'Encounter':
        types = resource.get('type') or []
        first = types[0] if types and isinstance(types[0], Mapping) else {}
        return str(first.get('text') or _UNNAMED['Encounter'])
    if rtype in _CONCEPT_FIELD:
        return concept_text(resource.get(_CONCEPT_FIELD[rtype])) or _UNNAMED[rtype]
    return 'Unnamed Resource'


def _quantity(q: Any) -> Optional[str]:
    if not isinstance(q, Mapping) or q.get('value') is None:
        return None
    return f"{q.get('value')} {q.get('unit') or ''}".strip()


def observation_value(observation: Mapping[str, Any]) -> str:
    """Headline value of an Observation for list and detail views."""
    qty = _quantity(observation.get('valueQuantity'))
    if qty is not None:
        return qty
    if 'valueCodeableConcept' in observation:
        return concept_text(observation.get('valueCodeableConcept')) or 'Coded Value'
    if observation.get('valueString'):
        return str(observation['valueString'])
    if isinstance(observation.get('valueBoolean'), bool):
        return 'Yes' if observation['valueBoolean'] else 'No'
    if observation.get('valueInteger') is not None:
        return str(observation['valueInteger'])
    components = observation.get('component') or []
    if components:
        parts = []
        for comp in components:
            if not isinstance(comp, Mapping):
                continue
            label = concept_text(comp.get('code')) or 'Component'
            value = _quantity(comp.get('valueQuantity')) or concept_text(comp.get('valueCodeableConcept')) or 'No value'
            parts.append(f"{label}: {value}")
        return '; '.join(parts)
    return 'No value recorded'


def resource_summary_rows(bundle: Bundle) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    for resource in bundle.resources():
        rtype = resource.get('resourceType')
        meta = resource.get('meta') if isinstance(resource.get('meta'), Mapping) else {}
        row = {
            'type': rtype,
            'id': resource.get('id'),
            'name': resource_name(resource),
            'last_updated': meta.get('lastUpdated'),
            **resource_icon(rtype),
        }
        if rtype == 'Observation':
            row['value'] = observation_value(resource)
        rows.append(row)
    return rows
