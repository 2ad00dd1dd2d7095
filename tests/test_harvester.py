"""
Test Suite for the Card Harvester
=================================
Unit tests for models, region tables, recognition parsing, the group
index and the catalog parser.
"""

from __future__ import annotations

import json
from unittest.mock import MagicMock

import pytesseract
import pytest
import requests
from PIL import Image
from pydantic import ValidationError

from harvester.catalog import fetch_catalog, parse_card_items, parse_catalog, parse_group_names
from harvester.index import INDEX_FILENAME, GroupIndex, write_group_index
from harvester.models import (
    CardAttributes,
    CardCategory,
    CardRecord,
    CardResult,
    GroupReport,
    HarvestReport,
    RunStatus,
    UnitOutcome,
    decode_title,
    make_card_key,
)
from harvester.ocr import OCREngineError, RecognitionError, TesseractEngine
from harvester.recognizer import (
    UNIT_COST_PATTERN,
    CardRecognizer,
    fit_to_canvas,
    parse_region_text,
    parse_unit_table,
)
from harvester.regions import (
    CANNOT_FIELD,
    FIELD_ALLOWANCE_UNLIMITED,
    MK3,
    UNLIMITED,
    Box,
    CategoryLayout,
    RegionMap,
    RegionRule,
    Segmentation,
    exact_token,
    get_region_map,
)


class FakeReader:
    """Region reader returning canned text per box."""

    def __init__(self, texts: dict[Box, str] = None, error: Exception = None):
        self.texts = texts or {}
        self.error = error
        self.calls: list[tuple[Box, Segmentation]] = []

    def read_region(self, image, box, segmentation):
        self.calls.append((box, segmentation))
        if self.error:
            raise self.error
        return self.texts.get(box, "")


def _card_image(tmp_path, name="card.png"):
    path = tmp_path / name
    Image.new("RGB", (75, 105), "white").save(path)
    return path


def _layout(category: str):
    return MK3.layout_for(category)


# ═══════════════════════════════════════════════════════════════════════════════
# MODEL TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestCardRecord:
    """Test CardRecord construction and title handling."""

    def test_record_creation(self):
        record = CardRecord(id=12, category="Warjack", group="cygnar", title="Defender")
        assert record.id == 12
        assert record.category == "warjack"
        assert record.group == "cygnar"
        assert record.key == "defender"

    def test_record_is_frozen(self):
        record = CardRecord(id=1, category="solo", group="cygnar", title="Eiryss")
        with pytest.raises(ValidationError):
            record.title = "Other"

    def test_negative_id_rejected(self):
        with pytest.raises(ValidationError):
            CardRecord(id=-1, category="solo", group="cygnar", title="Eiryss")

    def test_blank_fields_rejected(self):
        with pytest.raises(ValidationError):
            CardRecord(id=1, category=" ", group="cygnar", title="Eiryss")
        with pytest.raises(ValidationError):
            CardRecord(id=1, category="solo", group="", title="Eiryss")
        with pytest.raises(ValidationError):
            CardRecord(id=1, category="solo", group="cygnar", title="  ")

    def test_category_aliases(self):
        record = CardRecord(id=1, category="WarBeasts", group="trollbloods", title="Axer")
        assert record.category == CardCategory.WARBEAST.value

    def test_commander_categories(self):
        caster = CardRecord(id=1, category="Warcaster", group="cygnar", title="Stryker")
        lock = CardRecord(id=2, category="warlock", group="trollbloods", title="Madrak")
        jack = CardRecord(id=3, category="warjack", group="cygnar", title="Lancer")
        assert caster.is_commander
        assert lock.is_commander
        assert not jack.is_commander

    def test_comma_entity_becomes_comma(self):
        record = CardRecord(
            id=1, category="warcaster", group="menoth", title="Kreoss&comma; Grand Exemplar"
        )
        assert record.title == "Kreoss, Grand Exemplar"

    def test_double_escaped_comma(self):
        assert decode_title("Kreoss&amp;comma; Grand Exemplar") == "Kreoss, Grand Exemplar"

    def test_entities_decoded(self):
        assert decode_title("Gun Mage Captain &amp; Adept") == "Gun Mage Captain & Adept"
        assert decode_title("Lt. Allison Jakes") == "Lt. Allison Jakes"

    @pytest.mark.parametrize("title", [
        "Kreoss&comma; Grand Exemplar",
        "A &amp;amp; B",
        "&quot;Dirty&quot; Meg",
        "plain title",
    ])
    def test_decoding_is_idempotent(self, title):
        once = decode_title(title)
        assert decode_title(once) == once

    def test_card_key(self):
        assert make_card_key("Kreoss, Grand Exemplar") == "kreoss-grand-exemplar"
        assert make_card_key("Lt. Allison Jakes") == "lt-allison-jakes"
        assert make_card_key("Trencher  Infantry -  Grunts") == "trencher-infantry-grunts"
        assert make_card_key("Ólafur's Gun") == "lafurs-gun"


class TestCardAttributes:
    """Test CardAttributes setters and domain checks."""

    def test_empty_attributes(self):
        attributes = CardAttributes()
        assert attributes.cost is None
        assert attributes.attachment is False
        assert attributes.model_dump(exclude_none=True) == {"attachment": False}

    def test_setters(self):
        attributes = CardAttributes()
        attributes.set_cost(7)
        attributes.set_cost_min(9)
        attributes.set_cost_max(15)
        attributes.set_size_min(6)
        attributes.set_size_max(10)
        attributes.set_field_allowance(2)
        attributes.set_attachment()
        assert attributes.cost == 7
        assert (attributes.cost_min, attributes.cost_max) == (9, 15)
        assert (attributes.size_min, attributes.size_max) == (6, 10)
        assert attributes.field_allowance == 2
        assert attributes.attachment is True

    def test_commander_cost(self):
        attributes = CardAttributes()
        attributes.set_commander_cost(28)
        assert attributes.bonus_cost == 28
        assert attributes.cost == 0

    def test_negative_cost_rejected(self):
        attributes = CardAttributes()
        with pytest.raises(ValidationError):
            attributes.set_cost(-1)
        with pytest.raises(ValueError):
            attributes.set_size_max(-3)

    def test_field_allowance_domain(self):
        attributes = CardAttributes()
        attributes.set_field_allowance(-1)
        assert attributes.field_allowance == -1
        with pytest.raises(ValidationError):
            attributes.set_field_allowance(-2)

    def test_focus_and_fury_are_exclusive(self):
        attributes = CardAttributes()
        attributes.set_focus(6)
        with pytest.raises(ValueError):
            attributes.set_fury(5)

        attributes = CardAttributes()
        attributes.set_fury(5)
        with pytest.raises(ValueError):
            attributes.set_focus(6)


class TestReports:
    """Test report aggregation."""

    def _outcome(self, key: str, ok: bool) -> UnitOutcome:
        return UnitOutcome(
            key=key,
            card_id=1,
            title=key,
            succeeded=ok,
            error_type=None if ok else "FetchError",
        )

    def test_group_counts(self):
        report = GroupReport(
            group="cygnar",
            outcomes=[self._outcome("a", True), self._outcome("b", False)],
        )
        assert report.total == 2
        assert report.succeeded == 1
        assert report.failed == 1
        assert not report.ok

    def test_run_status(self):
        ok = GroupReport(group="a", outcomes=[self._outcome("x", True)])
        bad = GroupReport(group="b", outcomes=[self._outcome("y", False)])

        assert HarvestReport(groups=[ok]).status == RunStatus.SUCCESS
        assert HarvestReport(groups=[ok, bad]).status == RunStatus.PARTIAL
        assert HarvestReport(groups=[bad]).status == RunStatus.FAILED

    def test_report_serialization(self):
        report = HarvestReport(
            groups=[GroupReport(group="a", outcomes=[self._outcome("x", False)])]
        )
        data = json.loads(json.dumps(report.model_dump(mode="json")))
        assert data["status"] == "failed"
        assert data["groups"][0]["failed"] == 1


# ═══════════════════════════════════════════════════════════════════════════════
# REGION MAP TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestRegions:
    """Test region tables and token predicates."""

    def test_token_predicates(self):
        assert CANNOT_FIELD("C") == 1
        assert CANNOT_FIELD("c") == 1
        assert CANNOT_FIELD("U") is None
        assert UNLIMITED("u") == FIELD_ALLOWANCE_UNLIMITED
        assert UNLIMITED("2") is None

    def test_segmentation_modes(self):
        assert Segmentation.WORD.psm == 8
        assert Segmentation.LINE.psm == 7
        assert Segmentation.BLOCK.psm == 6
        assert Segmentation.CHARACTER.psm == 10

    def test_invalid_box(self):
        with pytest.raises(ValueError):
            Box(10, 10, 5, 20)
        with pytest.raises(ValueError):
            Box(-1, 0, 5, 5)

    def test_every_layout_fits_canvas(self):
        width, height = MK3.canvas
        layouts = list(MK3.layouts.values()) + [MK3.default]
        for layout in layouts:
            boxes = [rule.box for rule in layout.rules]
            if layout.unit_table:
                boxes += [
                    layout.unit_table.header,
                    layout.unit_table.table,
                    layout.unit_table.attachment_cost.box,
                ]
            for box in boxes:
                assert box.right <= width
                assert box.bottom <= height

    def test_unknown_category_uses_default(self):
        assert MK3.layout_for("battle engine") is MK3.default

    def test_unit_layout_is_two_phase(self):
        assert _layout("unit").unit_table is not None
        assert _layout("warjack").unit_table is None

    def test_get_region_map(self):
        assert get_region_map("mk3") is MK3
        with pytest.raises(ValueError):
            get_region_map("mk2")


# ═══════════════════════════════════════════════════════════════════════════════
# PARSING TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestParseRegionText:
    """Test the region text parsing discipline."""

    def test_empty_text(self):
        assert parse_region_text("") is None
        assert parse_region_text(None) is None
        assert parse_region_text("  \n ") is None

    def test_plain_integer(self):
        assert parse_region_text(" 7\n") == 7
        assert parse_region_text("+28") == 28
        assert parse_region_text("0") == 0

    def test_unparseable_text(self):
        assert parse_region_text("7a") is None
        assert parse_region_text("-3") is None
        assert parse_region_text("PC") is None

    def test_predicates_in_order(self):
        predicates = (CANNOT_FIELD, UNLIMITED)
        assert parse_region_text("C\n", predicates) == 1
        assert parse_region_text(" u ", predicates) == FIELD_ALLOWANCE_UNLIMITED
        assert parse_region_text("3", predicates) == 3

    def test_predicate_wins_over_integer(self):
        predicates = (exact_token("10", FIELD_ALLOWANCE_UNLIMITED),)
        assert parse_region_text("10", predicates) == FIELD_ALLOWANCE_UNLIMITED

    def test_first_positive_predicate_wins(self):
        calls = []

        def first(text):
            calls.append("first")
            return 5

        def second(text):
            calls.append("second")
            return 6

        assert parse_region_text("x", (first, second)) == 5
        assert calls == ["first"]

    def test_non_positive_sentinel_is_no_match(self):
        assert parse_region_text("4", (lambda text: 0, lambda text: -1)) == 4


class TestUnitTable:
    """Test unit cost table scanning."""

    def test_pattern(self):
        assert UNIT_COST_PATTERN.findall("Leader and 5 Grunts 16") == ["5", "16"]
        assert UNIT_COST_PATTERN.findall("4 2") == ["4", "2"]
        assert UNIT_COST_PATTERN.findall("Leader and Grunts") == []

    def test_two_size_lines(self):
        costs, sizes = parse_unit_table("4 2\n6 3")
        assert costs == [2, 3]
        assert sizes == [4, 6]

    def test_single_cost_line(self):
        costs, sizes = parse_unit_table("Unit 8\n")
        assert costs == [8]
        assert sizes == []

    def test_leading_blank_lines_skipped(self):
        costs, sizes = parse_unit_table("\n\nLeader and 5 Grunts 10\nLeader and 9 Grunts 16")
        assert costs == [10, 16]
        assert sizes == [5, 9]

    def test_later_blank_line_terminates(self):
        costs, sizes = parse_unit_table("A 5\nB 9\n\nC 12")
        assert costs == [5, 9]

        costs, _ = parse_unit_table("A 5\n\n\nB 9")
        assert costs == [5]

    def test_malformed_lines_dropped(self):
        costs, sizes = parse_unit_table("Leader & Grunts\n1 2 3 4\nUnit 6")
        assert costs == [6]
        assert sizes == []

    def test_at_most_two_values(self):
        costs, sizes = parse_unit_table("A 1 2\nB 3 4\nC 5 6")
        assert costs == [2, 4]
        assert sizes == [1, 3]


# ═══════════════════════════════════════════════════════════════════════════════
# OCR ENGINE TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestTesseractEngine:
    """Test the Tesseract wrapper with pytesseract patched out."""

    def test_missing_binary(self, monkeypatch):
        def not_installed():
            raise pytesseract.TesseractNotFoundError()

        monkeypatch.setattr(pytesseract, "get_tesseract_version", not_installed)
        with pytest.raises(OCREngineError):
            TesseractEngine()

    def test_read_region(self, monkeypatch):
        calls = []

        def image_to_string(image, lang=None, config=""):
            calls.append((image.size, lang, config))
            return "7\n"

        monkeypatch.setattr(pytesseract, "get_tesseract_version", lambda: "5.3.0")
        monkeypatch.setattr(pytesseract, "image_to_string", image_to_string)

        engine = TesseractEngine()
        text = engine.read_region(
            Image.new("RGB", (100, 100), "white"), Box(10, 10, 30, 40), Segmentation.WORD
        )

        assert text == "7\n"
        assert calls == [((20, 30), "eng", "--psm 8")]

    def test_tesseract_failure(self, monkeypatch):
        def image_to_string(image, lang=None, config=""):
            raise pytesseract.TesseractError(1, "segfault")

        monkeypatch.setattr(pytesseract, "get_tesseract_version", lambda: "5.3.0")
        monkeypatch.setattr(pytesseract, "image_to_string", image_to_string)

        with pytest.raises(RecognitionError):
            TesseractEngine().read_region(
                Image.new("RGB", (100, 100)), Box(0, 0, 10, 10), Segmentation.CHARACTER
            )


# ═══════════════════════════════════════════════════════════════════════════════
# RECOGNIZER TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestCardRecognizer:
    """Test CardRecognizer against canned OCR output."""

    def test_fit_to_canvas(self):
        canvas = fit_to_canvas(Image.new("L", (750, 1050)), (2000, 2800))
        assert canvas.size == (2000, 2800)
        assert canvas.mode == "RGB"

    def test_render_fills_whole_canvas(self):
        canvas = fit_to_canvas(Image.new("RGB", (750, 1050), "red"), (2000, 2800))

        for corner in [(0, 0), (1999, 0), (0, 2799), (1999, 2799)]:
            red, green, blue = canvas.getpixel(corner)
            assert red > 200 and green < 50 and blue < 50, corner

    def test_letterbox_centers_render(self):
        canvas = fit_to_canvas(Image.new("RGB", (100, 100), "red"), (200, 280))

        assert canvas.getpixel((100, 10)) == (255, 255, 255)
        red, green, _ = canvas.getpixel((100, 140))
        assert red > 200 and green < 50

    def test_model_cost_and_field_allowance(self, tmp_path):
        layout = _layout("warjack")
        cost, fa = layout.rules
        reader = FakeReader({cost.box: "7\n", fa.box: "U"})

        attributes = CardRecognizer(reader, MK3).recognize(_card_image(tmp_path), "warjack")

        assert attributes.cost == 7
        assert attributes.field_allowance == FIELD_ALLOWANCE_UNLIMITED
        assert attributes.bonus_cost is None

    def test_commander_cost_is_bonus(self, tmp_path):
        cost, focus, fa = _layout("warcaster").rules
        reader = FakeReader({cost.box: "8", focus.box: "6", fa.box: "C"})

        attributes = CardRecognizer(reader, MK3).recognize(_card_image(tmp_path), "warcaster")

        assert attributes.bonus_cost == 8
        assert attributes.cost == 0
        assert attributes.focus == 6
        assert attributes.fury is None
        assert attributes.field_allowance == 1

    def test_warlock_reads_fury(self, tmp_path):
        cost, fury, _fa = _layout("warlock").rules
        reader = FakeReader({cost.box: "+27", fury.box: "7"})

        attributes = CardRecognizer(reader, MK3).recognize(_card_image(tmp_path), "warlock")

        assert attributes.fury == 7
        assert attributes.focus is None
        assert attributes.bonus_cost == 27

    def test_empty_regions_leave_attributes_unset(self, tmp_path):
        attributes = CardRecognizer(FakeReader(), MK3).recognize(
            _card_image(tmp_path), "warbeast"
        )
        assert attributes.model_dump(exclude_none=True) == {"attachment": False}

    def test_unit_table(self, tmp_path):
        unit = _layout("unit").unit_table
        reader = FakeReader({
            unit.header: "Iron Fang Pikemen",
            unit.table: "4 2\n6 3",
        })

        attributes = CardRecognizer(reader, MK3).recognize(_card_image(tmp_path), "unit")

        assert attributes.size_min == 5
        assert attributes.size_max == 7
        assert attributes.cost_min == 2
        assert attributes.cost_max == 3
        assert attributes.cost is None
        assert attributes.attachment is False

    def test_unit_single_cost(self, tmp_path):
        unit = _layout("unit").unit_table
        reader = FakeReader({unit.table: "Leader and 5 Grunts 16"})

        attributes = CardRecognizer(reader, MK3).recognize(_card_image(tmp_path), "unit")

        assert attributes.cost == 16
        assert attributes.size_min is None

    def test_unit_attachment(self, tmp_path):
        unit = _layout("unit").unit_table
        reader = FakeReader({
            unit.header: "Command Attachment",
            unit.attachment_cost.box: "4",
            unit.table: "4 2\n6 3",
        })

        attributes = CardRecognizer(reader, MK3).recognize(_card_image(tmp_path), "unit")

        assert attributes.attachment is True
        assert attributes.cost == 4
        assert attributes.cost_min is None
        assert unit.table not in [box for box, _ in reader.calls]

    def test_ocr_failure_aborts_card(self, tmp_path):
        reader = FakeReader(error=RecognitionError("tesseract crashed"))
        with pytest.raises(RecognitionError):
            CardRecognizer(reader, MK3).recognize(_card_image(tmp_path), "solo")

    def test_custom_region_map(self, tmp_path):
        box = Box(0, 0, 10, 10)
        region_map = RegionMap(
            name="test",
            canvas=(100, 140),
            layouts={"solo": CategoryLayout(rules=(
                RegionRule(box, Segmentation.CHARACTER, CardAttributes.set_cost),
            ))},
        )
        reader = FakeReader({box: "3"})

        attributes = CardRecognizer(reader, region_map).recognize(_card_image(tmp_path), "solo")

        assert attributes.cost == 3
        assert reader.calls == [(box, Segmentation.CHARACTER)]


# ═══════════════════════════════════════════════════════════════════════════════
# INDEX TESTS
# ═══════════════════════════════════════════════════════════════════════════════


def _result(card_id: int, category: str, title: str, **attrs) -> CardResult:
    record = CardRecord(id=card_id, category=category, group="cygnar", title=title)
    return CardResult(
        record=record,
        key=record.key,
        attributes=CardAttributes(**attrs),
        images=[f"{record.key}-1.jpg"],
    )


class TestGroupIndex:
    """Test the per-group card index."""

    def test_result_requires_images(self):
        record = CardRecord(id=1, category="solo", group="cygnar", title="Eiryss")
        with pytest.raises(ValidationError):
            CardResult(record=record, key="eiryss", attributes=CardAttributes(), images=[])

    def test_group_type(self):
        index = GroupIndex.build("Cygnar", [
            _result(1, "warcaster", "Stryker", cost=0, bonus_cost=28),
            _result(2, "warjack", "Lancer", cost=10),
        ])
        assert index.group_type == "Warmachine"

        index = GroupIndex.build("Trollbloods", [
            _result(3, "warlock", "Madrak", cost=0, bonus_cost=27),
            _result(4, "warbeast", "Axer", cost=11),
        ])
        assert index.group_type == "Hordes"

        assert GroupIndex.build("Mercs", [_result(5, "solo", "Eiryss")]).group_type == "Unknown"

    def test_json_layout(self):
        data = GroupIndex.build("Cygnar", [
            _result(1, "warcaster", "Stryker", cost=0, bonus_cost=28, focus=6),
            _result(2, "unit", "Trenchers", cost_min=8, cost_max=13, size_min=6, size_max=10),
            _result(3, "battle engine", "Storm Strider", cost=19),
        ]).to_json_dict()

        assert data["groupName"] == "Cygnar"
        assert data["groupType"] == "Unknown"
        assert "warlocks" not in data
        assert "warjacks" not in data
        assert data["solos"] == []
        assert data["warcasters"][0]["bonusCost"] == 28
        assert data["warcasters"][0]["images"] == ["stryker-1.jpg"]
        assert "fury" not in data["warcasters"][0]
        assert "attachment" not in data["warcasters"][0]
        assert data["units"][0]["sizeMax"] == 10
        assert data["others"][0]["title"] == "Storm Strider"

    def test_write_group_index(self, tmp_path):
        path = write_group_index(tmp_path, "Cygnar", [
            _result(2, "unit", "Gun Mage Officer", cost=4, attachment=True),
        ])

        assert path == tmp_path / INDEX_FILENAME
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["units"][0]["attachment"] is True
        assert data["units"][0]["cost"] == 4


# ═══════════════════════════════════════════════════════════════════════════════
# CATALOG TESTS
# ═══════════════════════════════════════════════════════════════════════════════


LISTING = """
<html><body>
<div id="general-faction-tabs" class="mdl-tabs">
  <div class="mdl-tabs__tab-bar">
    <a href="#cygnar" class="mdl-tabs__tab is-active" title="Cygnar">Cygnar</a>
    <a href="#protectorate" class="mdl-tabs__tab" title="Protectorate of Menoth">PoM</a>
    <a href="https://example.com" class="mdl-tabs__tab" title="Shop">Shop</a>
    <a href="#skip" class="other" title="Skip">Skip</a>
  </div>
</div>
<carditem :card="101" faction="cygnar" job="Warcaster" title="Captain Victoria Haley"></carditem>
<carditem :card="102" faction="cygnar" job="warjack" title="Lancer"></carditem>
<carditem :card='205' faction='protectorate' job='warcaster'
          title='Kreoss&amp;comma; Grand Exemplar'></carditem>
<carditem faction="protectorate" job="solo"></carditem>
</body></html>
"""


class TestCatalog:
    """Test listing page parsing."""

    def test_card_items(self):
        records = parse_card_items(LISTING)

        assert [r.id for r in records] == [101, 102, 205, 0]
        assert records[0].category == "warcaster"
        assert records[2].group == "protectorate"
        assert records[2].title == "Kreoss, Grand Exemplar"
        assert records[3].title == "unknown"

    def test_group_names(self):
        names = parse_group_names(LISTING)
        assert names == {
            "cygnar": "Cygnar",
            "protectorate": "Protectorate of Menoth",
        }

    def test_missing_tab_bar(self):
        assert parse_group_names("<carditem :card='1'>") == {}

    def test_catalog(self):
        catalog = parse_catalog(LISTING)
        assert len(catalog.records) == 4
        assert catalog.group_name("protectorate") == "Protectorate of Menoth"
        assert catalog.group_name("mercenaries") == "mercenaries"

    def test_fetch_catalog(self):
        session = MagicMock()
        session.get.return_value.text = LISTING

        catalog = fetch_catalog("http://cards.example.com", session=session, timeout=5)

        session.get.assert_called_once_with("http://cards.example.com", timeout=5)
        assert [r.id for r in catalog.records] == [101, 102, 205, 0]

    def test_fetch_catalog_failure(self):
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("down")

        with pytest.raises(requests.ConnectionError):
            fetch_catalog("http://cards.example.com", session=session)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
