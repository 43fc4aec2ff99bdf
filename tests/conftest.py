from __future__ import annotations

import datetime as dt
from pathlib import Path

import pytest

from samsync.db import get_engine
from samsync.state import SyncContext


TODAY = dt.date(2025, 6, 1)

ROOT_NS = (
    'xmlns:ns2="urn:be:fgov:ehealth:samws:v2:core" '
    'xmlns:ns4="urn:be:fgov:ehealth:samws:v2:export"'
)

REF_XML = f"""<?xml version="1.0" encoding="UTF-8"?>
<ns4:ExportReferences {ROOT_NS} version="5">
  <ns4:AtcClassification code="N02BE01">
    <ns4:Description>paracetamol</ns4:Description>
  </ns4:AtcClassification>
  <ns4:Substance code="100">
    <ns4:Name>
      <ns2:Fr>Paracétamol</ns2:Fr>
      <ns2:Nl>Paracetamol</ns2:Nl>
    </ns4:Name>
  </ns4:Substance>
  <ns4:PharmaceuticalForm code="10219000">
    <ns4:Name><ns2:Fr>comprimé</ns2:Fr><ns2:Nl>tablet</ns2:Nl></ns4:Name>
  </ns4:PharmaceuticalForm>
  <ns4:RouteOfAdministration code="20053000">
    <ns4:Name><ns2:Fr>voie orale</ns2:Fr><ns2:Nl>oraal gebruik</ns2:Nl></ns4:Name>
  </ns4:RouteOfAdministration>
</ns4:ExportReferences>
"""

CPN_XML = f"""<?xml version="1.0" encoding="UTF-8"?>
<ns4:ExportActors {ROOT_NS} version="5">
  <ns4:Company actorNr="1234">
    <ns4:Data from="2010-01-01">
      <ns4:Denomination>Pharma SA</ns4:Denomination>
      <ns4:LegalForm>SA</ns4:LegalForm>
      <ns4:VatNr countryCode="BE">0123456789</ns4:VatNr>
      <ns4:City>Bruxelles</ns4:City>
      <ns4:Language>FR</ns4:Language>
    </ns4:Data>
  </ns4:Company>
</ns4:ExportActors>
"""

RML_XML = f"""<?xml version="1.0" encoding="UTF-8"?>
<ns4:ExportReimbursementLaws {ROOT_NS} version="5">
  <ns4:LegalBasis key="RD20180201">
    <ns4:Data from="2018-03-01">
      <ns4:Title><ns2:Fr>AR du 1er février 2018</ns2:Fr><ns2:Nl>KB van 1 februari 2018</ns2:Nl></ns4:Title>
      <ns4:Type>ROYAL_DECREE</ns4:Type>
      <ns4:EffectiveOn>2018-03-01</ns4:EffectiveOn>
    </ns4:Data>
    <ns4:LegalReference key="IV">
      <ns4:Data from="2018-03-01">
        <ns4:Title><ns2:Fr>Chapitre IV</ns2:Fr><ns2:Nl>Hoofdstuk IV</ns2:Nl></ns4:Title>
        <ns4:Type>CHAPTER</ns4:Type>
      </ns4:Data>
      <ns4:LegalReference key="10680000">
        <ns4:Data from="2018-03-01">
          <ns4:Type>PARAGRAPH</ns4:Type>
        </ns4:Data>
        <ns4:LegalText key="1">
          <ns4:Data from="2018-03-01">
            <ns4:Content><ns2:Fr>La spécialité est remboursée</ns2:Fr><ns2:Nl>De specialiteit wordt vergoed</ns2:Nl></ns4:Content>
            <ns4:SequenceNr>1</ns4:SequenceNr>
          </ns4:Data>
          <ns4:LegalText key="1a">
            <ns4:Data from="2018-03-01">
              <ns4:Content><ns2:Fr>a) chez l'adulte</ns2:Fr></ns4:Content>
              <ns4:Type>POINT</ns4:Type>
              <ns4:SequenceNr>1</ns4:SequenceNr>
            </ns4:Data>
          </ns4:LegalText>
        </ns4:LegalText>
      </ns4:LegalReference>
    </ns4:LegalReference>
  </ns4:LegalBasis>
</ns4:ExportReimbursementLaws>
"""

VMP_XML = f"""<?xml version="1.0" encoding="UTF-8"?>
<ns4:ExportVirtualMedicines {ROOT_NS} version="5">
  <ns4:Vtm code="1">
    <ns4:Data from="2010-01-01">
      <ns4:Name><ns2:Fr>paracétamol</ns2:Fr><ns2:Nl>paracetamol</ns2:Nl></ns4:Name>
    </ns4:Data>
  </ns4:Vtm>
  <ns4:VmpGroup code="2">
    <ns4:Data from="2010-01-01">
      <ns4:Name><ns2:Fr>paracétamol oral 500 mg</ns2:Fr><ns2:Nl>paracetamol oraal 500 mg</ns2:Nl></ns4:Name>
      <ns4:PatientFrailtyIndicator>true</ns4:PatientFrailtyIndicator>
    </ns4:Data>
  </ns4:VmpGroup>
  <ns4:Vmp code="3">
    <ns4:Data from="2010-01-01">
      <ns4:Name><ns2:Fr>paracétamol 500 mg comprimé</ns2:Fr><ns2:Nl>paracetamol 500 mg tablet</ns2:Nl></ns4:Name>
      <ns4:VmpGroup code="2"/>
      <ns4:Vtm code="1"/>
    </ns4:Data>
  </ns4:Vmp>
</ns4:ExportVirtualMedicines>
"""

AMP_XML = f"""<?xml version="1.0" encoding="UTF-8"?>
<ns4:ExportActualMedicines {ROOT_NS} version="5">
  <ns4:Amp code="SAM000123-00" vmpCode="3">
    <ns4:Data from="2015-01-01">
      <ns4:Name><ns2:Fr>Dafalgan 500 mg</ns2:Fr><ns2:Nl>Dafalgan 500 mg</ns2:Nl></ns4:Name>
      <ns4:OfficialName>Dafalgan 500 mg comprimés</ns4:OfficialName>
      <ns4:Company actorNr="1234"/>
      <ns4:BlackTriangle>false</ns4:BlackTriangle>
      <ns4:MedicineType>ALLOPATHIC</ns4:MedicineType>
      <ns4:Status>AUTHORIZED</ns4:Status>
    </ns4:Data>
    <ns4:AmpComponent sequenceNr="1">
      <ns4:Data from="2015-01-01">
        <ns4:PharmaceuticalForm code="10219000"/>
        <ns4:RouteOfAdministration code="20053000"/>
      </ns4:Data>
      <ns4:RealActualIngredient rank="1">
        <ns4:Data from="2015-01-01">
          <ns4:Type>ACTIVE_SUBSTANCE</ns4:Type>
          <ns4:Strength unit="mg">500</ns4:Strength>
          <ns4:Substance code="100"/>
        </ns4:Data>
      </ns4:RealActualIngredient>
    </ns4:AmpComponent>
    <ns4:Ampp ctiExtended="123456-01">
      <ns4:Data from="2015-01-01">
        <ns4:AuthorisationNr>BE123456</ns4:AuthorisationNr>
        <ns4:PrescriptionNameFamhp><ns2:Fr>Dafalgan 500 mg 20 comp.</ns2:Fr></ns4:PrescriptionNameFamhp>
        <ns4:PackDisplayValue>20</ns4:PackDisplayValue>
        <ns4:ExFactoryPrice>2.5</ns4:ExFactoryPrice>
        <ns4:Atc code="N02BE01"/>
      </ns4:Data>
      <ns4:Dmpp code="0039347" deliveryEnvironment="P">
        <ns4:Data from="2015-01-01">
          <ns4:Price>3.2</ns4:Price>
          <ns4:Cheap>true</ns4:Cheap>
          <ns4:Reimbursable>true</ns4:Reimbursable>
        </ns4:Data>
      </ns4:Dmpp>
    </ns4:Ampp>
  </ns4:Amp>
</ns4:ExportActualMedicines>
"""

RMB_XML = f"""<?xml version="1.0" encoding="UTF-8"?>
<ns4:ExportReimbursements {ROOT_NS} version="5">
  <ns4:ReimbursementContext code="0039347" codeType="CNK" deliveryEnvironment="P" legalReferencePath="RD20180201-IV-10680000">
    <ns4:Data from="2020-01-01">
      <ns4:ReimbursementCriterion category="B" code="B-1"/>
      <ns4:Temporary>false</ns4:Temporary>
      <ns4:Reference>true</ns4:Reference>
      <ns4:ReimbursementBasePrice>3.2</ns4:ReimbursementBasePrice>
      <ns4:PricingUnit>
        <ns4:Quantity>20</ns4:Quantity>
        <ns4:Label><ns2:Fr>comprimé</ns2:Fr><ns2:Nl>tablet</ns2:Nl></ns4:Label>
      </ns4:PricingUnit>
    </ns4:Data>
  </ns4:ReimbursementContext>
  <ns4:ReimbursementContext code="9999999" codeType="CNK" deliveryEnvironment="P">
    <ns4:Data from="2020-01-01">
      <ns4:ReimbursementCriterion category="A" code="A-1"/>
    </ns4:Data>
  </ns4:ReimbursementContext>
</ns4:ExportReimbursements>
"""

CHAPTERIV_XML = f"""<?xml version="1.0" encoding="UTF-8"?>
<ns4:ExportChapterIV {ROOT_NS} version="5">
  <ns4:Paragraph ChapterName="IV" ParagraphName="10680000">
    <ns4:Data from="2018-03-01">
      <ns4:KeyStringNl>paracetamol chronische pijn</ns4:KeyStringNl>
      <ns4:KeyStringFr>paracétamol douleur chronique</ns4:KeyStringFr>
      <ns4:ProcessType>1</ns4:ProcessType>
      <ns4:ParagraphVersion>3</ns4:ParagraphVersion>
      <ns4:ModificationStatus>C</ns4:ModificationStatus>
    </ns4:Data>
  </ns4:Paragraph>
</ns4:ExportChapterIV>
"""

EXPORT_FILES = {
    "REF": ("REF-1720000000000.xml", REF_XML),
    "CPN": ("CPN-1720000000000.xml", CPN_XML),
    "RML": ("RML-1720000000000.xml", RML_XML),
    "VMP": ("VMP-1720000000000.xml", VMP_XML),
    "AMP": ("AMP-1720000000000.xml", AMP_XML),
    "RMB": ("RMB-1720000000000.xml", RMB_XML),
    "CHAPTERIV": ("CHAPTERIV-1720000000000.xml", CHAPTERIV_XML),
}


def write_export(directory: Path, overrides: dict[str, str] | None = None, skip: tuple[str, ...] = ()) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    overrides = overrides or {}
    for file_type, (filename, content) in EXPORT_FILES.items():
        if file_type in skip:
            continue
        (directory / filename).write_text(overrides.get(file_type, content), encoding="utf-8")
    return directory


def make_context(engine, tmp_path: Path, **kwargs) -> SyncContext:
    defaults = {
        "sync_id": 1700000000,
        "today": TODAY,
        "engine": engine,
        "skip_download": True,
        "export_dir": tmp_path / "export",
        "progress_file": tmp_path / "progress.json",
        "retry_wait_multiplier": 0,
    }
    defaults.update(kwargs)
    return SyncContext(**defaults)


@pytest.fixture
def export_dir(tmp_path: Path) -> Path:
    return write_export(tmp_path / "export")


@pytest.fixture
def engine(tmp_path: Path):
    engine = get_engine(f"sqlite:///{tmp_path / 'sam.db'}")
    yield engine
    engine.dispose()


@pytest.fixture
def ctx() -> SyncContext:
    return SyncContext(sync_id=1700000000, today=TODAY)
