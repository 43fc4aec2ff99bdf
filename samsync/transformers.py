"""Per-entity rules turning SAM export elements into table rows.

Every transformer returns tagged results: a ``Record`` for each row to
write, or a ``Skipped`` naming why an element was not imported. Composite
entities (AMP, legal basis, reimbursement context) return a list.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING
from typing import Any

from samsync.config import LEGAL_MAX_DEPTH
from samsync.element import XmlElement
from samsync.element import current_version
from samsync.element import multilingual
from samsync.element import multilingual_child
from samsync.element import parse_bool
from samsync.element import parse_date
from samsync.element import parse_float
from samsync.element import parse_int
from samsync.element import validity_window

if TYPE_CHECKING:
    from samsync.state import SyncContext


CHAPTER_IV_PATH_RE = re.compile(r"-IV-(\d+)$")


@dataclass(frozen=True, slots=True)
class Record:
    table: str
    data: dict[str, Any]


@dataclass(frozen=True, slots=True)
class Skipped:
    entity: str
    reason: str


TransformResult = Record | Skipped


def _code(element: XmlElement | None, name: str = "code") -> str | None:
    if element is None:
        return None
    return element.attr(name) or element.attr(name[:1].upper() + name[1:])


def _text(element: XmlElement | None, name: str) -> str | None:
    if element is None:
        return None
    return element.child_text(name)


def _flag(element: XmlElement | None, name: str) -> bool:
    return parse_bool(_text(element, name))


def _number(element: XmlElement | None, name: str) -> float | None:
    return parse_float(_text(element, name))


def _dated(data: dict[str, Any], version: XmlElement) -> dict[str, Any]:
    start_date, end_date = validity_window(version)
    data["start_date"] = start_date
    data["end_date"] = end_date
    return data


def _actor_nr(value: str | None) -> str | None:
    if not value:
        return None
    return value.zfill(5)


def is_expired(data: dict[str, Any], today) -> bool:
    end_date = data.get("end_date")
    return end_date is not None and end_date <= today


# --- REF --------------------------------------------------------------------


def _named_reference(table: str, element: XmlElement) -> TransformResult:
    code = _code(element)
    if not code:
        return Skipped(table, "missing code")
    name = multilingual_child(element, "Name")
    if not name:
        return Skipped(table, "missing name")
    return Record(table, {"code": code, "name": name})


def transform_substance(element: XmlElement, ctx: SyncContext) -> TransformResult:
    result = _named_reference("substance", element)
    if isinstance(result, Record):
        result.data.update(start_date=None, end_date=None)
    return result


def transform_pharmaceutical_form(element: XmlElement, ctx: SyncContext) -> TransformResult:
    return _named_reference("pharmaceutical_form", element)


def transform_route_of_administration(element: XmlElement, ctx: SyncContext) -> TransformResult:
    return _named_reference("route_of_administration", element)


def transform_atc_classification(element: XmlElement, ctx: SyncContext) -> TransformResult:
    code = _code(element)
    if not code:
        return Skipped("atc_classification", "missing code")
    description = element.child_text("Description")
    if not description:
        return Skipped("atc_classification", "missing description")
    return Record("atc_classification", {"code": code, "description": description})


# --- CPN --------------------------------------------------------------------


def transform_company(element: XmlElement, ctx: SyncContext) -> TransformResult:
    actor_nr = _actor_nr(_code(element, "actorNr"))
    if not actor_nr:
        return Skipped("company", "missing actorNr")
    data = current_version(element)
    if data is None:
        return Skipped("company", "no version")
    denomination = data.child_text("Denomination")
    if not denomination:
        return Skipped("company", "missing denomination")
    vat = data.child("VatNr")
    row = {
        "actor_nr": actor_nr,
        "denomination": denomination,
        "legal_form": data.child_text("LegalForm"),
        "vat_country_code": vat.attr("countryCode") if vat is not None else None,
        "vat_number": vat.text if vat is not None else None,
        "street_name": data.child_text("StreetName"),
        "street_num": data.child_text("StreetNum"),
        "postbox": data.child_text("Postbox"),
        "postcode": data.child_text("Postcode"),
        "city": data.child_text("City"),
        "country_code": data.child_text("CountryCode"),
        "phone": data.child_text("Phone"),
        "language": data.child_text("Language"),
    }
    return Record("company", _dated(row, data))


# --- RML --------------------------------------------------------------------


def transform_legal_basis(element: XmlElement, ctx: SyncContext) -> list[TransformResult]:
    key = _code(element, "key")
    if not key:
        return [Skipped("legal_basis", "missing key")]
    data = current_version(element)
    if data is None:
        return [Skipped("legal_basis", "no version")]
    title = multilingual_child(data, "Title")
    if not title:
        return [Skipped("legal_basis", "missing title")]

    row = {
        "key": key,
        "title": title,
        "type": data.child_text("Type") or "ROYAL_DECREE",
        "effective_on": parse_date(data.child_text("EffectiveOn")),
    }
    results: list[TransformResult] = [Record("legal_basis", _dated(row, data))]
    for reference in element.children_named("LegalReference"):
        _legal_reference(reference, key, None, 1, results)
    return results


def _legal_reference(
    element: XmlElement,
    legal_basis_key: str,
    parent_path: str | None,
    depth: int,
    results: list[TransformResult],
) -> None:
    if depth > LEGAL_MAX_DEPTH:
        results.append(Skipped("legal_reference", f"nested deeper than {LEGAL_MAX_DEPTH} levels"))
        return
    key = _code(element, "key")
    if not key:
        results.append(Skipped("legal_reference", "missing key"))
        return
    data = current_version(element)
    if data is None:
        results.append(Skipped("legal_reference", "no version"))
        return

    path = f"{parent_path}/{key}" if parent_path else key
    row = {
        "legal_basis_key": legal_basis_key,
        "parent_path": parent_path,
        "key": key,
        "path": path,
        "title": multilingual_child(data, "Title"),
        "type": data.child_text("Type") or "PARAGRAPH",
        "first_published_on": parse_date(data.child_text("FirstPublishedOn")),
        "last_modified_on": parse_date(data.child_text("LastModifiedOn")),
    }
    results.append(Record("legal_reference", _dated(row, data)))

    for text in element.children_named("LegalText"):
        _legal_text(text, legal_basis_key, path, None, 1, results)
    for child in element.children_named("LegalReference"):
        _legal_reference(child, legal_basis_key, path, depth + 1, results)


def _legal_text(
    element: XmlElement,
    legal_basis_key: str,
    reference_path: str,
    parent_text_key: str | None,
    depth: int,
    results: list[TransformResult],
) -> None:
    if depth > LEGAL_MAX_DEPTH:
        results.append(Skipped("legal_text", f"nested deeper than {LEGAL_MAX_DEPTH} levels"))
        return
    key = _code(element, "key")
    if not key:
        results.append(Skipped("legal_text", "missing key"))
        return
    data = current_version(element)
    if data is None:
        results.append(Skipped("legal_text", "no version"))
        return

    sequence_nr = parse_int(data.child_text("SequenceNr"))
    row = {
        "legal_basis_key": legal_basis_key,
        "legal_reference_path": reference_path,
        "parent_text_key": parent_text_key,
        "key": key,
        "content": multilingual_child(data, "Content"),
        "type": data.child_text("Type") or "ALINEA",
        "sequence_nr": sequence_nr if sequence_nr is not None else 0,
        "last_modified_on": parse_date(data.child_text("LastModifiedOn")),
    }
    results.append(Record("legal_text", _dated(row, data)))

    for child in element.children_named("LegalText"):
        _legal_text(child, legal_basis_key, reference_path, key, depth + 1, results)


# --- VMP --------------------------------------------------------------------


def transform_vtm(element: XmlElement, ctx: SyncContext) -> TransformResult:
    code = _code(element)
    if not code:
        return Skipped("vtm", "missing code")
    data = current_version(element)
    if data is None:
        return Skipped("vtm", "no version")
    name = multilingual_child(data, "Name")
    if not name:
        return Skipped("vtm", "missing name")
    return Record("vtm", _dated({"code": code, "name": name}, data))


def transform_vmp_group(element: XmlElement, ctx: SyncContext) -> TransformResult:
    code = _code(element)
    if not code:
        return Skipped("vmp_group", "missing code")
    data = current_version(element)
    if data is None:
        return Skipped("vmp_group", "no version")
    name = multilingual_child(data, "Name")
    if not name:
        return Skipped("vmp_group", "missing name")
    row = {
        "code": code,
        "name": name,
        "no_generic_prescription_reason": data.child_text("NoGenericPrescriptionReason"),
        "no_switch_reason": data.child_text("NoSwitchReason"),
        "patient_frailty_indicator": _flag(data, "PatientFrailtyIndicator"),
    }
    return Record("vmp_group", _dated(row, data))


def transform_vmp(element: XmlElement, ctx: SyncContext) -> TransformResult:
    code = _code(element)
    if not code:
        return Skipped("vmp", "missing code")
    data = current_version(element)
    if data is None:
        return Skipped("vmp", "no version")
    name = multilingual_child(data, "Name")
    if not name:
        return Skipped("vmp", "missing name")

    # References sit either in the version or directly on the element.
    vtm = data.child("Vtm") or element.child("Vtm")
    group = data.child("VmpGroup") or element.child("VmpGroup")
    row = {
        "code": code,
        "name": name,
        "abbreviated_name": multilingual_child(data, "AbbreviatedName"),
        "vtm_code": _code(vtm),
        "vmp_group_code": _code(group),
        "status": data.child_text("Status") or "AUTHORIZED",
    }
    return Record("vmp", _dated(row, data))


# --- AMP --------------------------------------------------------------------


def transform_amp(element: XmlElement, ctx: SyncContext) -> list[TransformResult]:
    """Flatten one AMP into amp, amp_component, amp_ingredient, ampp and dmpp rows.

    Every DMPP seen registers ``code:deliveryEnvironment`` in
    ``ctx.dmpp_keys`` so reimbursement contexts can be checked later.
    """
    code = _code(element)
    if not code:
        return [Skipped("amp", "missing code")]
    data = current_version(element)
    if data is None:
        return [Skipped("amp", "no version")]
    name = multilingual_child(data, "Name")
    if not name:
        return [Skipped("amp", "missing name")]

    company = data.child("Company")
    amp_row = {
        "code": code,
        "name": name,
        "abbreviated_name": multilingual_child(data, "AbbreviatedName"),
        "official_name": data.child_text("OfficialName"),
        "vmp_code": _code(element, "vmpCode"),
        "company_actor_nr": _actor_nr(_code(company, "actorNr")),
        "black_triangle": _flag(data, "BlackTriangle"),
        "medicine_type": data.child_text("MedicineType"),
        "status": data.child_text("Status") or "AUTHORIZED",
    }
    results: list[TransformResult] = [Record("amp", _dated(amp_row, data))]

    for component in element.children_named("AmpComponent"):
        results.extend(_amp_component(component, code))
    for ampp in element.children_named("Ampp"):
        results.extend(_ampp(ampp, code, ctx))
    return results


def _amp_component(element: XmlElement, amp_code: str) -> list[TransformResult]:
    sequence_nr = parse_int(_code(element, "sequenceNr"))
    if sequence_nr is None:
        sequence_nr = 1
    data = current_version(element)
    if data is None:
        return [Skipped("amp_component", "no version")]

    results: list[TransformResult] = [
        Record(
            "amp_component",
            {
                "amp_code": amp_code,
                "sequence_nr": sequence_nr,
                "pharmaceutical_form_code": _code(data.child("PharmaceuticalForm")),
                "route_of_administration_code": _code(data.child("RouteOfAdministration")),
            },
        )
    ]

    for ingredient in element.children_named("RealActualIngredient"):
        rank = parse_int(_code(ingredient, "rank"))
        if rank is None:
            rank = 1
        ingredient_data = current_version(ingredient)
        if ingredient_data is None:
            results.append(Skipped("amp_ingredient", "no version"))
            continue
        strength = ingredient_data.child("Strength")
        results.append(
            Record(
                "amp_ingredient",
                {
                    "amp_code": amp_code,
                    "component_sequence_nr": sequence_nr,
                    "rank": rank,
                    "type": ingredient_data.child_text("Type") or "ACTIVE_SUBSTANCE",
                    "substance_code": _code(ingredient_data.child("Substance")),
                    "strength_value": parse_float(strength.text) if strength is not None else None,
                    "strength_unit": _code(strength, "unit"),
                    "strength_description": ingredient_data.child_text("StrengthDescription"),
                },
            )
        )
    return results


def _ampp(element: XmlElement, amp_code: str, ctx: SyncContext) -> list[TransformResult]:
    cti_extended = _code(element, "ctiExtended")
    if not cti_extended:
        return [Skipped("ampp", "missing ctiExtended")]
    data = current_version(element)
    if data is None:
        return [Skipped("ampp", "no version")]

    price = _number(data, "OfficialExFactoryPrice")
    if price is None:
        price = _number(data, "ExFactoryPrice")
    row = {
        "cti_extended": cti_extended,
        "amp_code": amp_code,
        "prescription_name": multilingual_child(data, "PrescriptionNameFamhp"),
        "authorisation_nr": data.child_text("AuthorisationNr"),
        "orphan": _flag(data, "Orphan"),
        "leaflet_url": multilingual_child(data, "LeafletLink"),
        "spc_url": multilingual_child(data, "SpcLink"),
        "pack_display_value": data.child_text("PackDisplayValue"),
        "status": data.child_text("Status") or "AUTHORIZED",
        "ex_factory_price": price,
        "atc_code": _code(data.child("Atc")),
    }
    results: list[TransformResult] = [Record("ampp", _dated(row, data))]

    for dmpp in element.children_named("Dmpp"):
        dmpp_code = _code(dmpp)
        if not dmpp_code:
            results.append(Skipped("dmpp", "missing code"))
            continue
        dmpp_data = current_version(dmpp)
        if dmpp_data is None:
            results.append(Skipped("dmpp", "no version"))
            continue
        environment = _code(dmpp, "deliveryEnvironment") or "P"
        ctx.dmpp_keys.add(f"{dmpp_code}:{environment}")
        dmpp_row = {
            "code": dmpp_code,
            "delivery_environment": environment,
            "ampp_cti_extended": cti_extended,
            "price": _number(dmpp_data, "Price"),
            "cheap": _flag(dmpp_data, "Cheap"),
            "cheapest": _flag(dmpp_data, "Cheapest"),
            "reimbursable": _flag(dmpp_data, "Reimbursable"),
        }
        results.append(Record("dmpp", _dated(dmpp_row, dmpp_data)))
    return results


# --- RMB --------------------------------------------------------------------


def transform_reimbursement_context(element: XmlElement, ctx: SyncContext) -> list[TransformResult]:
    """Reimbursement rules for one CNK, plus its Chapter IV paragraph link.

    Contexts for a DMPP absent from the AMP export (discontinued products)
    are dropped.
    """
    dmpp_code = _code(element)
    if not dmpp_code:
        return [Skipped("reimbursement_context", "missing code")]
    code_type = element.attr("codeType")
    if code_type != "CNK":
        return [Skipped("reimbursement_context", f"codeType {code_type or 'missing'}")]
    environment = element.attr("deliveryEnvironment") or "P"
    if f"{dmpp_code}:{environment}" not in ctx.dmpp_keys:
        return [Skipped("reimbursement_context", "unknown dmpp")]
    data = current_version(element)
    if data is None:
        return [Skipped("reimbursement_context", "no version")]

    legal_reference_path = element.attr("legalReferencePath") or ""
    criterion = data.child("ReimbursementCriterion")
    pricing_unit = data.child("PricingUnit")
    row = {
        "dmpp_code": dmpp_code,
        "delivery_environment": environment,
        "legal_reference_path": legal_reference_path,
        "reimbursement_criterion_category": _code(criterion, "category"),
        "reimbursement_criterion_code": _code(criterion),
        "temporary": _flag(data, "Temporary"),
        "reference_price": _flag(data, "Reference"),
        "flat_rate_system": _flag(data, "FlatRateSystem"),
        "reimbursement_base_price": _number(data, "ReimbursementBasePrice"),
        "reference_base_price": _number(data, "ReferenceBasePrice"),
        "pricing_unit_quantity": _number(pricing_unit, "Quantity"),
        "pricing_unit_label": multilingual(pricing_unit.child("Label")) if pricing_unit is not None else None,
    }
    row = _dated(row, data)
    results: list[TransformResult] = [Record("reimbursement_context", row)]

    match = CHAPTER_IV_PATH_RE.search(legal_reference_path)
    if match and not is_expired(row, ctx.today):
        results.append(
            Record(
                "dmpp_chapter_iv",
                {
                    "dmpp_code": dmpp_code,
                    "delivery_environment": environment,
                    "chapter_name": "IV",
                    "paragraph_name": match.group(1),
                },
            )
        )
    return results


# --- CHAPTERIV --------------------------------------------------------------


def transform_chapter_iv_paragraph(element: XmlElement, ctx: SyncContext) -> TransformResult:
    chapter_name = element.attr("ChapterName")
    paragraph_name = element.attr("ParagraphName")
    if not chapter_name or not paragraph_name:
        return Skipped("chapter_iv_paragraph", "missing chapter or paragraph name")
    data = current_version(element)
    if data is None:
        return Skipped("chapter_iv_paragraph", "no version")

    key_string = {
        lang: text
        for lang, text in (("nl", data.child_text("KeyStringNl")), ("fr", data.child_text("KeyStringFr")))
        if text
    }
    row = {
        "chapter_name": chapter_name,
        "paragraph_name": paragraph_name,
        "key_string": key_string or None,
        "process_type": data.child_text("ProcessType"),
        "process_type_overrule": data.child_text("ProcessTypeOverrule"),
        "paragraph_version": parse_int(data.child_text("ParagraphVersion")),
        "modification_status": data.child_text("ModificationStatus"),
    }
    return Record("chapter_iv_paragraph", _dated(row, data))
