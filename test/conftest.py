import sys
from pathlib import Path

import pytest
import yaml

from fontTools.fontBuilder import FontBuilder
from fontTools.pens.t2CharStringPen import T2CharStringPen
from fontTools.pens.ttGlyphPen import TTGlyphPen

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from font_codec import GlyphRecord, PathCommand


def rectangle(x0, y0, x1, y1):
    """Outline of an axis-aligned rectangle."""
    return (
        PathCommand("M", ((x0, y0),)),
        PathCommand("L", ((x0, y1),)),
        PathCommand("L", ((x1, y1),)),
        PathCommand("L", ((x1, y0),)),
        PathCommand("Z"),
    )


class FakeFont:
    """In-memory stand-in for font_codec.SourceFont."""

    def __init__(self, glyphs, named=(), units_per_em=1000, ascender=800, descender=-200):
        self._by_char = {}
        self._by_name = {}
        for char, advance, outline in glyphs:
            record = GlyphRecord(f"uni{ord(char):04X}", ord(char), advance, outline)
            self._by_char[char] = record
            self._by_name[record.name] = record
        for name, advance, outline in named:
            self._by_name[name] = GlyphRecord(name, None, advance, outline)
        self.units_per_em = units_per_em
        self.ascender = ascender
        self.descender = descender

    def has_glyph_for_character(self, char):
        return char in self._by_char

    def glyph_for_character(self, char):
        return self._by_char[char]

    def glyph_by_name(self, name):
        return self._by_name.get(name)

    def advance_width(self, char):
        return self._by_char[char].advance_width


# ---------------------------------------------------------------------------
# Synthetic source fonts
# ---------------------------------------------------------------------------

def _draw_rect(x0, y0, x1, y1):
    def draw(pen):
        pen.moveTo((x0, y0))
        pen.lineTo((x0, y1))
        pen.lineTo((x1, y1))
        pen.lineTo((x1, y0))
        pen.closePath()
    return draw


def _draw_bowl(x0, y0, x1, y1):
    """A closed shape with one quadratic segment."""
    def draw(pen):
        pen.moveTo((x0, y0))
        pen.lineTo((x1, y0))
        pen.qCurveTo((x1, y1), (x0, y1))
        pen.closePath()
    return draw


def make_font(path, glyphs, is_ttf=False, units_per_em=1000, ascent=880, descent=-120):
    """
    Write a small font with FontBuilder.

    glyphs: list of (name, unicode or None, advance_width, draw or None).
    """
    fb = FontBuilder(units_per_em, isTTF=is_ttf)
    fb.setupGlyphOrder([name for name, _, _, _ in glyphs])
    fb.setupCharacterMap({cp: name for name, cp, _, _ in glyphs if cp is not None})

    metrics = {}
    if is_ttf:
        tt_glyphs = {}
        for name, _, advance, draw in glyphs:
            pen = TTGlyphPen(None)
            if draw:
                draw(pen)
            tt_glyphs[name] = pen.glyph()
            metrics[name] = (advance, 0)
        fb.setupGlyf(tt_glyphs)
    else:
        charstrings = {}
        for name, _, advance, draw in glyphs:
            pen = T2CharStringPen(width=advance, glyphSet=None)
            if draw:
                draw(pen)
            charstrings[name] = pen.getCharString()
            metrics[name] = (advance, 0)
        fb.setupCFF(
            psName=path.stem,
            fontInfo={"FamilyName": path.stem},
            charStringsDict=charstrings,
            privateDict={},
        )

    fb.setupHorizontalMetrics(metrics)
    fb.setupHorizontalHeader(ascent=ascent, descent=descent)
    fb.setupNameTable({"familyName": path.stem, "styleName": "Regular"})
    fb.setupOS2(sTypoAscender=ascent, sTypoDescender=descent, usWinAscent=ascent, usWinDescent=abs(descent))
    fb.setupPost()
    fb.save(str(path))
    return path


@pytest.fixture(scope="session")
def font_dir(tmp_path_factory):
    """Latin (TrueType, 600 units wide), CJK (CFF, 1000) and ligature (CFF, 1000) fonts."""
    directory = tmp_path_factory.mktemp("fonts")

    make_font(directory / "latin.ttf", [
        (".notdef", None, 600, None),
        ("a", ord("a"), 600, _draw_bowl(60, 0, 540, 480)),
        ("b", ord("b"), 600, _draw_rect(60, 0, 540, 700)),
        ("f", ord("f"), 600, _draw_rect(120, 0, 480, 700)),
        ("i", ord("i"), 600, _draw_rect(240, 0, 360, 500)),
        ("equal", ord("="), 600, _draw_rect(60, 200, 540, 300)),
    ], is_ttf=True)

    make_font(directory / "cjk.otf", [
        (".notdef", None, 1000, None),
        ("uni3042", 0x3042, 1000, _draw_rect(100, -100, 900, 800)),
        ("uni3044", 0x3044, 1000, _draw_rect(150, -50, 850, 750)),
    ])

    make_font(directory / "ligature.otf", [
        (".notdef", None, 1000, None),
        ("a", ord("a"), 1000, _draw_rect(100, 0, 900, 500)),
        ("f", ord("f"), 1000, _draw_rect(200, 0, 800, 700)),
        ("i", ord("i"), 1000, _draw_rect(400, 0, 600, 500)),
        ("equal", ord("="), 1000, _draw_rect(100, 200, 900, 300)),
        # Ligatures sit on the last character and reach back over the others
        ("f_i.liga", None, 1000, _draw_rect(-900, 0, 900, 700)),
        ("f_f_i.liga", None, 1000, _draw_rect(-1900, 0, 900, 700)),
        ("equal_equal.liga", None, 1000, _draw_rect(-900, 200, 900, 300)),
    ])
    return directory


def write_build_config(directory, font_dir, ligatures="fi f_i.liga\nffi f_f_i.liga\n== equal_equal.liga\n-> hyphen_greater.liga\n", profile="grid"):
    """Write definition files and a build_config.yaml into directory."""
    data_dir = directory / "data"
    data_dir.mkdir(exist_ok=True)
    (data_dir / "ascii.txt").write_text("# Latin\nabfiz=\n#xyz\n", encoding="utf-8")
    (data_dir / "cjk.txt").write_text("# kana\nあい\n", encoding="utf-8")
    (data_dir / "ligature.txt").write_text(ligatures, encoding="utf-8")

    config = {
        "metadata": {
            "font_name": "Test Code",
            "style_name": "Regular",
            "version": "1.000",
            "copyright": "© Test",
        },
        "sources": {
            "latin": {
                "font": str(font_dir / "latin.ttf"),
                "subset": "data/ascii.txt",
                "reference_character": "a",
            },
            "cjk": {
                "font": str(font_dir / "cjk.otf"),
                "subset": "data/cjk.txt",
                "reference_character": "あ",
            },
            "ligature": {
                "font": str(font_dir / "ligature.otf"),
                "definitions": "data/ligature.txt",
                "reference_character": "a",
            },
        },
        "output_dir": "output",
        "layout_profile": profile,
        "layout_profiles": {
            "grid": {"cjk_correction": "5/6"},
            "calibrated": {
                "cjk_correction": "5/6",
                "ligature_offset_multipliers": {2: 2.25, 3: 4.75},
                "default_ligature_offset_multiplier": 2.25,
                "scale_ligature_offset": True,
            },
        },
    }
    path = directory / "build_config.yaml"
    path.write_text(yaml.safe_dump(config, allow_unicode=True), encoding="utf-8")
    return path


@pytest.fixture
def config_path(tmp_path, font_dir):
    return write_build_config(tmp_path, font_dir)


@pytest.fixture(scope="session")
def built_font_path(tmp_path_factory, font_dir):
    from build_font import build_font, load_build_config

    directory = tmp_path_factory.mktemp("build")
    config = load_build_config(write_build_config(directory, font_dir))
    return build_font(config).output_path
