"""
Read glyphs out of source fonts and write composite CFF fonts.
Uses fonttools for both directions: TTFont glyph sets and pens to read
outlines, FontBuilder and feaLib to build the OTF output.
"""

import struct
from dataclasses import dataclass, field
from datetime import datetime
from io import BytesIO
from pathlib import Path

from fontTools.feaLib.builder import addOpenTypeFeaturesFromString
from fontTools.feaLib.error import FeatureLibError
from fontTools.fontBuilder import FontBuilder
from fontTools.pens.basePen import BasePen
from fontTools.pens.boundsPen import BoundsPen
from fontTools.pens.t2CharStringPen import T2CharStringPen
from fontTools.ttLib import TTFont, TTLibError


class FontBuildError(Exception):
    """
    Base class for errors that abort a build.

    warnings holds the BuildWarnings collected before the failure, often
    the reason for it (e.g. the missing glyph behind a broken ligature).
    """

    def __init__(self, message, warnings=()):
        super().__init__(message)
        self.warnings = list(warnings)


class ResourceUnavailable(FontBuildError):
    """A definition file or font asset could not be read or parsed."""


class CodecFailure(FontBuildError):
    """fonttools rejected the assembled font."""


@dataclass(frozen=True)
class PathCommand:
    """
    One drawing command of a glyph outline.

    type is "M" (move), "L" (line), "Q" (quadratic), "C" (cubic),
    "Z" (close contour) or "E" (end open contour). points holds the
    coordinate pairs of the command: one for M/L, two for Q, three for C,
    none for Z/E.
    """
    type: str
    points: tuple[tuple[float, float], ...] = ()


@dataclass(frozen=True)
class GlyphRecord:
    name: str
    unicode: int | None
    advance_width: float
    outline: tuple[PathCommand, ...] = ()


@dataclass(frozen=True)
class SubstitutionRule:
    """Replace the glyph sequence input_glyph_indices with output_glyph_index."""
    input_glyph_indices: tuple[int, ...]
    output_glyph_index: int
    feature: str = "calt"


@dataclass(frozen=True)
class CompositeFont:
    family_name: str
    style_name: str
    version: str
    units_per_em: int
    ascender: int
    descender: int
    glyphs: tuple[GlyphRecord, ...]
    metadata: dict = field(default_factory=dict)


class OutlinePen(BasePen):
    """
    Record an outline as PathCommands.

    BasePen splits TrueType qCurveTo runs into single quadratic segments
    and decomposes components through the glyph set, so every recorded
    command carries at most three points.
    """

    def __init__(self, glyphSet=None):
        super().__init__(glyphSet)
        self.commands: list[PathCommand] = []

    def _moveTo(self, pt):
        self.commands.append(PathCommand("M", (pt,)))

    def _lineTo(self, pt):
        self.commands.append(PathCommand("L", (pt,)))

    def _qCurveToOne(self, pt1, pt2):
        self.commands.append(PathCommand("Q", (pt1, pt2)))

    def _curveToOne(self, pt1, pt2, pt3):
        self.commands.append(PathCommand("C", (pt1, pt2, pt3)))

    def _closePath(self):
        self.commands.append(PathCommand("Z"))

    def _endPath(self):
        self.commands.append(PathCommand("E"))


def draw_outline(outline, pen):
    """Replay an outline onto any fonttools segment pen."""
    for command in outline:
        if command.type == "M":
            pen.moveTo(command.points[0])
        elif command.type == "L":
            pen.lineTo(command.points[0])
        elif command.type == "Q":
            pen.qCurveTo(*command.points)
        elif command.type == "C":
            pen.curveTo(*command.points)
        elif command.type == "Z":
            pen.closePath()
        elif command.type == "E":
            pen.endPath()
        else:
            raise ValueError(f"Unknown path command: {command.type!r}")


def left_side_bearing(outline) -> int:
    """Left side bearing of an outline; 0 for empty glyphs."""
    pen = BoundsPen(None)
    draw_outline(outline, pen)
    if pen.bounds is None:
        return 0
    return round(pen.bounds[0])


class SourceFont:
    """A read-only view of one source font."""

    def __init__(self, font: TTFont, path: Path | None = None):
        self.path = path
        self._font = font
        self._cmap = font.getBestCmap() or {}
        self._glyph_set = font.getGlyphSet()
        self._glyph_order = font.getGlyphOrder()
        # Lowest code point per glyph name, for records looked up by name
        self._unicodes: dict[str, int] = {}
        for codepoint, name in sorted(self._cmap.items()):
            self._unicodes.setdefault(name, codepoint)

    @classmethod
    def load(cls, path) -> "SourceFont":
        path = Path(path)
        try:
            return cls(TTFont(path), path)
        except (OSError, TTLibError, KeyError, struct.error) as e:
            raise ResourceUnavailable(f"Cannot load font {path}: {e}") from e

    def __repr__(self):
        return f"SourceFont({str(self.path)!r})"

    @property
    def units_per_em(self) -> int:
        return self._font["head"].unitsPerEm

    @property
    def ascender(self) -> int:
        return self._font["hhea"].ascent

    @property
    def descender(self) -> int:
        return self._font["hhea"].descent

    @property
    def glyph_count(self) -> int:
        return len(self._glyph_order)

    def has_glyph_for_character(self, char: str) -> bool:
        return ord(char) in self._cmap

    def glyph_for_character(self, char: str) -> GlyphRecord:
        """Return the glyph mapped to char. Raises KeyError if there is none."""
        codepoint = ord(char)
        return self._record(self._cmap[codepoint], codepoint)

    def glyph_by_name(self, name: str) -> GlyphRecord | None:
        if name not in self._glyph_set:
            return None
        return self._record(name, self._unicodes.get(name))

    def glyph_at(self, index: int) -> GlyphRecord:
        name = self._glyph_order[index]
        return self._record(name, self._unicodes.get(name))

    def advance_width(self, char: str) -> float:
        return self._glyph_set[self._cmap[ord(char)]].width

    def _record(self, name: str, codepoint: int | None) -> GlyphRecord:
        glyph = self._glyph_set[name]
        pen = OutlinePen(self._glyph_set)
        glyph.draw(pen)
        return GlyphRecord(
            name=name,
            unicode=codepoint,
            advance_width=glyph.width,
            outline=tuple(pen.commands),
        )


def generate_calt_fea(glyph_order: list[str], substitutions) -> str | None:
    """
    Generate OpenType feature code for the ligature substitutions.

    Every rule becomes a ligature substitution inside one lookup of the
    calt feature. feaLib orders longer component sequences first, so
    "===" wins over "==" regardless of rule order.

    Returns the FEA string, or None if there are no rules.
    """
    if not substitutions:
        return None

    features: dict[str, list[str]] = {}
    for rule in substitutions:
        components = " ".join(glyph_order[i] for i in rule.input_glyph_indices)
        ligature = glyph_order[rule.output_glyph_index]
        features.setdefault(rule.feature, []).append(
            f"        sub {components} by {ligature};"
        )

    parts = []
    for tag, rules in features.items():
        lines = [f"feature {tag} {{", f"    lookup {tag}_ligatures {{"]
        lines.extend(rules)
        lines.append(f"    }} {tag}_ligatures;")
        lines.append(f"}} {tag};")
        parts.append("\n".join(lines))
    return "\n\n".join(parts)


def _check_glyph_table(font: CompositeFont, substitutions):
    if not font.glyphs or font.glyphs[0].name != ".notdef":
        raise CodecFailure("Glyph 0 must be .notdef")
    seen = set()
    for glyph in font.glyphs:
        if glyph.name in seen:
            raise CodecFailure(f"Duplicate glyph name: {glyph.name}")
        seen.add(glyph.name)
    glyph_count = len(font.glyphs)
    for rule in substitutions:
        for index in (*rule.input_glyph_indices, rule.output_glyph_index):
            if not 0 <= index < glyph_count:
                raise CodecFailure(
                    f"Substitution references glyph index {index}, "
                    f"but the font has {glyph_count} glyphs"
                )


def _name_strings(font: CompositeFont, ps_name: str) -> dict:
    metadata = font.metadata
    full_name = f"{font.family_name} {font.style_name}"
    name_strings = {
        "familyName": {"en": font.family_name},
        "styleName": {"en": font.style_name},
        "uniqueFontIdentifier": f"FontBuilder:{font.family_name}.{font.style_name}",
        "fullName": {"en": full_name},
        "psName": ps_name,
        "version": f"Version {font.version}",
    }

    if "copyright" in metadata:
        copyright_str = metadata["copyright"]
        if "© " in copyright_str:
            year = datetime.now().year
            copyright_str = copyright_str.replace("© ", f"© {year} ", 1)
        name_strings["copyright"] = {"en": copyright_str}
    if "license" in metadata:
        name_strings["licenseDescription"] = {"en": metadata["license"]}
    if "license_url" in metadata:
        name_strings["licenseInfoURL"] = {"en": metadata["license_url"]}
    if "sample_text" in metadata:
        name_strings["sampleText"] = {"en": metadata["sample_text"]}
    if "vendor_url" in metadata:
        name_strings["vendorURL"] = {"en": metadata["vendor_url"]}
    if "description" in metadata:
        name_strings["description"] = {"en": metadata["description"]}
    return name_strings


def serialize(font: CompositeFont, substitutions) -> bytes:
    """
    Build a CFF-based OpenType font (.otf) and return its bytes.

    Args:
        font: the composed glyph table and font-wide metrics
        substitutions: SubstitutionRules, compiled into GSUB via feaLib

    Raises CodecFailure if fonttools rejects the font.
    """
    _check_glyph_table(font, substitutions)
    glyph_order = [glyph.name for glyph in font.glyphs]

    # First writer wins for code points
    cmap = {}
    for glyph in font.glyphs:
        if glyph.unicode is not None:
            cmap.setdefault(glyph.unicode, glyph.name)

    try:
        fb = FontBuilder(font.units_per_em, isTTF=False)
        fb.setupGlyphOrder(glyph_order)
        fb.setupCharacterMap(cmap)

        charstrings = {}
        metrics = {}
        for glyph in font.glyphs:
            width = round(glyph.advance_width)
            pen = T2CharStringPen(width=width, glyphSet=None)
            draw_outline(glyph.outline, pen)
            charstrings[glyph.name] = pen.getCharString()
            metrics[glyph.name] = (width, left_side_bearing(glyph.outline))

        ps_name = f"{font.family_name.replace(' ', '')}-{font.style_name.replace(' ', '')}"
        fb.setupCFF(
            psName=ps_name,
            fontInfo={
                "FamilyName": font.family_name,
                "FullName": f"{font.family_name} {font.style_name}",
            },
            charStringsDict=charstrings,
            privateDict={},
        )
        fb.setupHorizontalMetrics(metrics)
        fb.setupHorizontalHeader(ascent=font.ascender, descent=font.descender)
        fb.setupNameTable(_name_strings(font, ps_name))
        fb.setupOS2(
            sTypoAscender=font.ascender,
            sTypoDescender=font.descender,
            sTypoLineGap=0,
            usWinAscent=font.ascender,
            usWinDescent=abs(font.descender),
            fsType=0,  # Installable embedding - no restrictions
        )
        fb.setupPost(isFixedPitch=1)
        fb.setupHead(unitsPerEm=font.units_per_em, fontRevision=float(font.version))

        fea_code = generate_calt_fea(glyph_order, substitutions)
        if fea_code:
            addOpenTypeFeaturesFromString(fb.font, fea_code)

        buf = BytesIO()
        fb.save(buf)
    except (FeatureLibError, TTLibError, ValueError, KeyError, struct.error, OverflowError) as e:
        raise CodecFailure(f"Cannot serialize {font.family_name}: {e}") from e
    return buf.getvalue()
