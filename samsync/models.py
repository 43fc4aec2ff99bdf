from __future__ import annotations

import datetime as dt
from typing import Any

from sqlalchemy import JSON
from sqlalchemy import BigInteger
from sqlalchemy import Boolean
from sqlalchemy import Date
from sqlalchemy import DateTime
from sqlalchemy import Integer
from sqlalchemy import Numeric
from sqlalchemy import String
from sqlalchemy import Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.orm import Mapped
from sqlalchemy.orm import mapped_column


# {"fr": ..., "nl": ..., "de": ..., "en": ...}
Multilingual = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")
Price = Numeric(10, 4, asdecimal=False)


class Base(DeclarativeBase):
    pass


class SyncStamped:
    sync_id: Mapped[int] = mapped_column(BigInteger, nullable=False)


class ValidityWindow:
    start_date: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[dt.date | None] = mapped_column(Date, nullable=True)


# --- REF --------------------------------------------------------------------


class Substance(SyncStamped, ValidityWindow, Base):
    __tablename__ = "substance"

    code: Mapped[str] = mapped_column(String(20), primary_key=True)
    name: Mapped[dict[str, Any]] = mapped_column(Multilingual, nullable=False)


class AtcClassification(SyncStamped, Base):
    __tablename__ = "atc_classification"

    code: Mapped[str] = mapped_column(String(20), primary_key=True)
    description: Mapped[str] = mapped_column(String(500), nullable=False)


class PharmaceuticalForm(SyncStamped, Base):
    __tablename__ = "pharmaceutical_form"

    code: Mapped[str] = mapped_column(String(20), primary_key=True)
    name: Mapped[dict[str, Any]] = mapped_column(Multilingual, nullable=False)


class RouteOfAdministration(SyncStamped, Base):
    __tablename__ = "route_of_administration"

    code: Mapped[str] = mapped_column(String(20), primary_key=True)
    name: Mapped[dict[str, Any]] = mapped_column(Multilingual, nullable=False)


# --- CPN --------------------------------------------------------------------


class Company(SyncStamped, ValidityWindow, Base):
    __tablename__ = "company"

    actor_nr: Mapped[str] = mapped_column(String(10), primary_key=True)
    denomination: Mapped[str] = mapped_column(String(255), nullable=False)
    legal_form: Mapped[str | None] = mapped_column(String(50), nullable=True)
    vat_country_code: Mapped[str | None] = mapped_column(String(3), nullable=True)
    vat_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    street_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    street_num: Mapped[str | None] = mapped_column(String(50), nullable=True)
    postbox: Mapped[str | None] = mapped_column(String(50), nullable=True)
    postcode: Mapped[str | None] = mapped_column(String(50), nullable=True)
    city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    country_code: Mapped[str | None] = mapped_column(String(3), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    language: Mapped[str | None] = mapped_column(String(10), nullable=True)


# --- RML --------------------------------------------------------------------


class LegalBasis(SyncStamped, ValidityWindow, Base):
    __tablename__ = "legal_basis"

    key: Mapped[str] = mapped_column(String(50), primary_key=True)
    title: Mapped[dict[str, Any]] = mapped_column(Multilingual, nullable=False)
    type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    effective_on: Mapped[dt.date | None] = mapped_column(Date, nullable=True)


class LegalReference(SyncStamped, ValidityWindow, Base):
    __tablename__ = "legal_reference"

    legal_basis_key: Mapped[str] = mapped_column(String(50), primary_key=True)
    path: Mapped[str] = mapped_column(String(500), primary_key=True)
    key: Mapped[str] = mapped_column(String(100), nullable=False)
    parent_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    title: Mapped[dict[str, Any] | None] = mapped_column(Multilingual, nullable=True)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    first_published_on: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    last_modified_on: Mapped[dt.date | None] = mapped_column(Date, nullable=True)


class LegalText(SyncStamped, ValidityWindow, Base):
    __tablename__ = "legal_text"

    legal_basis_key: Mapped[str] = mapped_column(String(50), primary_key=True)
    legal_reference_path: Mapped[str] = mapped_column(String(500), primary_key=True)
    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    parent_text_key: Mapped[str | None] = mapped_column(String(100), nullable=True)
    content: Mapped[dict[str, Any] | None] = mapped_column(Multilingual, nullable=True)
    type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    sequence_nr: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_modified_on: Mapped[dt.date | None] = mapped_column(Date, nullable=True)


# --- VMP --------------------------------------------------------------------


class Vtm(SyncStamped, ValidityWindow, Base):
    __tablename__ = "vtm"

    code: Mapped[str] = mapped_column(String(20), primary_key=True)
    name: Mapped[dict[str, Any]] = mapped_column(Multilingual, nullable=False)


class VmpGroup(SyncStamped, ValidityWindow, Base):
    __tablename__ = "vmp_group"

    code: Mapped[str] = mapped_column(String(20), primary_key=True)
    name: Mapped[dict[str, Any]] = mapped_column(Multilingual, nullable=False)
    no_generic_prescription_reason: Mapped[str | None] = mapped_column(String(100), nullable=True)
    no_switch_reason: Mapped[str | None] = mapped_column(String(100), nullable=True)
    patient_frailty_indicator: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class Vmp(SyncStamped, ValidityWindow, Base):
    __tablename__ = "vmp"

    code: Mapped[str] = mapped_column(String(20), primary_key=True)
    name: Mapped[dict[str, Any]] = mapped_column(Multilingual, nullable=False)
    abbreviated_name: Mapped[dict[str, Any] | None] = mapped_column(Multilingual, nullable=True)
    vtm_code: Mapped[str | None] = mapped_column(String(20), nullable=True, index=True)
    vmp_group_code: Mapped[str | None] = mapped_column(String(20), nullable=True, index=True)
    status: Mapped[str | None] = mapped_column(String(20), nullable=True)


# --- AMP --------------------------------------------------------------------


class Amp(SyncStamped, ValidityWindow, Base):
    __tablename__ = "amp"

    code: Mapped[str] = mapped_column(String(50), primary_key=True)
    name: Mapped[dict[str, Any]] = mapped_column(Multilingual, nullable=False)
    abbreviated_name: Mapped[dict[str, Any] | None] = mapped_column(Multilingual, nullable=True)
    official_name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    vmp_code: Mapped[str | None] = mapped_column(String(20), nullable=True, index=True)
    company_actor_nr: Mapped[str | None] = mapped_column(String(10), nullable=True, index=True)
    black_triangle: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    medicine_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    status: Mapped[str | None] = mapped_column(String(20), nullable=True)


class AmpComponent(SyncStamped, Base):
    __tablename__ = "amp_component"

    amp_code: Mapped[str] = mapped_column(String(50), primary_key=True)
    sequence_nr: Mapped[int] = mapped_column(Integer, primary_key=True)
    pharmaceutical_form_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    route_of_administration_code: Mapped[str | None] = mapped_column(String(20), nullable=True)


class AmpIngredient(SyncStamped, Base):
    __tablename__ = "amp_ingredient"

    amp_code: Mapped[str] = mapped_column(String(50), primary_key=True)
    component_sequence_nr: Mapped[int] = mapped_column(Integer, primary_key=True)
    rank: Mapped[int] = mapped_column(Integer, primary_key=True)
    type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    substance_code: Mapped[str | None] = mapped_column(String(20), nullable=True, index=True)
    strength_value: Mapped[float | None] = mapped_column(Numeric(15, 4, asdecimal=False), nullable=True)
    strength_unit: Mapped[str | None] = mapped_column(String(50), nullable=True)
    strength_description: Mapped[str | None] = mapped_column(String(255), nullable=True)


class Ampp(SyncStamped, ValidityWindow, Base):
    __tablename__ = "ampp"

    cti_extended: Mapped[str] = mapped_column(String(50), primary_key=True)
    amp_code: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    prescription_name: Mapped[dict[str, Any] | None] = mapped_column(Multilingual, nullable=True)
    authorisation_nr: Mapped[str | None] = mapped_column(String(50), nullable=True)
    orphan: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    leaflet_url: Mapped[dict[str, Any] | None] = mapped_column(Multilingual, nullable=True)
    spc_url: Mapped[dict[str, Any] | None] = mapped_column(Multilingual, nullable=True)
    pack_display_value: Mapped[str | None] = mapped_column(String(500), nullable=True)
    status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    ex_factory_price: Mapped[float | None] = mapped_column(Price, nullable=True)
    atc_code: Mapped[str | None] = mapped_column(String(20), nullable=True, index=True)


class Dmpp(SyncStamped, ValidityWindow, Base):
    __tablename__ = "dmpp"

    code: Mapped[str] = mapped_column(String(20), primary_key=True)
    delivery_environment: Mapped[str] = mapped_column(String(1), primary_key=True)
    ampp_cti_extended: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    price: Mapped[float | None] = mapped_column(Price, nullable=True)
    cheap: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cheapest: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reimbursable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


# --- RMB --------------------------------------------------------------------


class ReimbursementContext(SyncStamped, ValidityWindow, Base):
    __tablename__ = "reimbursement_context"

    dmpp_code: Mapped[str] = mapped_column(String(20), primary_key=True)
    delivery_environment: Mapped[str] = mapped_column(String(1), primary_key=True)
    # Empty string when the export carries no legal reference.
    legal_reference_path: Mapped[str] = mapped_column(String(255), primary_key=True)
    reimbursement_criterion_category: Mapped[str | None] = mapped_column(String(10), nullable=True)
    reimbursement_criterion_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    flat_rate_system: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reference_price: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    temporary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reference_base_price: Mapped[float | None] = mapped_column(Price, nullable=True)
    reimbursement_base_price: Mapped[float | None] = mapped_column(Price, nullable=True)
    pricing_unit_quantity: Mapped[float | None] = mapped_column(Price, nullable=True)
    pricing_unit_label: Mapped[dict[str, Any] | None] = mapped_column(Multilingual, nullable=True)


class DmppChapterIv(SyncStamped, Base):
    __tablename__ = "dmpp_chapter_iv"

    dmpp_code: Mapped[str] = mapped_column(String(20), primary_key=True)
    delivery_environment: Mapped[str] = mapped_column(String(1), primary_key=True)
    chapter_name: Mapped[str] = mapped_column(String(20), primary_key=True)
    paragraph_name: Mapped[str] = mapped_column(String(50), primary_key=True)


# --- CHAPTERIV --------------------------------------------------------------


class ChapterIvParagraph(SyncStamped, ValidityWindow, Base):
    __tablename__ = "chapter_iv_paragraph"

    chapter_name: Mapped[str] = mapped_column(String(20), primary_key=True)
    paragraph_name: Mapped[str] = mapped_column(String(50), primary_key=True)
    key_string: Mapped[dict[str, Any] | None] = mapped_column(Multilingual, nullable=True)
    process_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    process_type_overrule: Mapped[str | None] = mapped_column(String(50), nullable=True)
    paragraph_version: Mapped[int | None] = mapped_column(Integer, nullable=True)
    modification_status: Mapped[str | None] = mapped_column(String(50), nullable=True)


# --- bookkeeping ------------------------------------------------------------


class SyncMetadata(Base):
    __tablename__ = "sync_metadata"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sync_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    sync_type: Mapped[str] = mapped_column(String(50), nullable=False)
    started_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="running")
    source_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    source_date: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    record_counts: Mapped[dict[str, Any] | None] = mapped_column(JSON().with_variant(JSONB(), "postgresql"), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)


# Tables replaced wholesale on every run.
SYNCED_TABLES: dict[str, Any] = {
    model.__tablename__: model.__table__
    for model in (
        Substance,
        AtcClassification,
        PharmaceuticalForm,
        RouteOfAdministration,
        Company,
        LegalBasis,
        LegalReference,
        LegalText,
        Vtm,
        VmpGroup,
        Vmp,
        Amp,
        AmpComponent,
        AmpIngredient,
        Ampp,
        Dmpp,
        ReimbursementContext,
        DmppChapterIv,
        ChapterIvParagraph,
    )
}
