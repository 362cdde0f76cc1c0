#!/usr/bin/env python3
"""
Build a composite monospace programming font from three source fonts.
Uses fonttools FontBuilder (via font_codec) to create OTF output.

Glyphs are taken from a Latin font, a CJK font and a ligature font,
scaled onto one character grid (CJK glyphs are two cells wide), and the
ligature font's ligature glyphs are wired up through a calt feature.

Usage:
    uv run python build_font.py

    Paths, names and layout tuning are read from build_config.yaml next
    to this script.

Outputs:
    output_dir/YukiCode-Regular.otf  - Composite monospace font
    output_dir/YukiCode-Regular.fea  - Generated feature code
"""

import sys
from dataclasses import dataclass, field
from fractions import Fraction
from pathlib import Path

import yaml

from font_codec import (
    CompositeFont,
    FontBuildError,
    GlyphRecord,
    PathCommand,
    ResourceUnavailable,
    SourceFont,
    SubstitutionRule,
    generate_calt_fea,
    serialize,
)

DEFAULT_CONFIG_PATH = Path(__file__).parent / "build_config.yaml"

# Source Han draws its ideographs for a 5:3 em, our cell grid is 2:1
CJK_CORRECTION = Fraction(5, 6)

SCRIPT_LIGATURE = "l"
SCRIPT_LATIN = "a"
SCRIPT_CJK = "c"


class MissingSubstitutionInput(FontBuildError):
    """A ligature component has no glyph in the composite font."""


@dataclass(frozen=True)
class BuildWarning:
    """A recoverable problem, e.g. a character missing from its source font."""
    kind: str
    message: str
    code_point: int | None = None
    glyph_name: str | None = None

    def __str__(self):
        return self.message


# ---------------------------------------------------------------------------
# Definition files
# ---------------------------------------------------------------------------

def read_text(path) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ResourceUnavailable(f"Cannot read {path}: {e}") from e


def load_subset_data(path) -> list[int]:
    """Load subset character data from a text file.

    Every character of every non-comment line is part of the subset.
    Lines starting with '#' are comments. Returns sorted code points.
    """
    codepoints = set()
    for line in read_text(path).split("\n"):
        if line.startswith("#"):
            continue
        codepoints.update(ord(c) for c in line)
    return sorted(codepoints)


@dataclass(frozen=True)
class LigatureRule:
    sequence: str
    target_glyph_name: str


@dataclass(frozen=True)
class LigatureData:
    characters: frozenset[int]
    subset: list[int]
    rules: list[LigatureRule]


def load_ligature_data(path) -> LigatureData:
    """Load ligature definitions from a text file.

    Each line is "FROM TO": the character sequence and the name of the
    ligature glyph in the ligature font. TO is optional; a line without it
    only adds its characters to the subset. A repeated FROM replaces the
    earlier glyph name. A ligature needs at least two characters; a
    shorter FROM with a TO raises ResourceUnavailable.
    """
    characters = set()
    mapping: dict[str, str] = {}
    for line_number, line in enumerate(read_text(path).split("\n"), start=1):
        if line.startswith("#") or not line.strip():
            continue
        parts = line.split()
        sequence = parts[0]
        if len(parts) > 1:
            if len(sequence) < 2:
                raise ResourceUnavailable(
                    f"{path}:{line_number}: ligature {sequence!r} -> {parts[1]} "
                    f"needs at least two characters"
                )
            mapping[sequence] = parts[1]
        characters.update(ord(c) for c in sequence)

    return LigatureData(
        characters=frozenset(characters),
        subset=sorted(characters),
        rules=[LigatureRule(seq, name) for seq, name in mapping.items()],
    )


# ---------------------------------------------------------------------------
# Layout
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LayoutProfile:
    """
    Tuning constants for putting three unrelated fonts on one grid.

    cjk_correction: scale applied to CJK outlines. Not derived from font
        metrics; 5/6 fits Source Han Code JP.
    ligature_offset_multipliers: {sequence length: multiplier} for the
        horizontal shift of ligature glyphs, in cells.
    default_ligature_offset_multiplier: multiplier for lengths not listed.
        None shifts by (length - 1) cells, since ligature fonts draw the
        glyph at the position of the last character.
    scale_ligature_offset: also multiply the ligature shift by the
        ligature ratio.
    """
    name: str = "grid"
    cjk_correction: float = float(CJK_CORRECTION)
    ligature_offset_multipliers: dict = field(default_factory=dict)
    default_ligature_offset_multiplier: float | None = None
    scale_ligature_offset: bool = False

    @classmethod
    def from_config(cls, name: str, values: dict | None) -> "LayoutProfile":
        values = values or {}
        multipliers = {
            int(length): float(Fraction(str(m)))
            for length, m in (values.get("ligature_offset_multipliers") or {}).items()
        }
        default_multiplier = values.get("default_ligature_offset_multiplier")
        if default_multiplier is not None:
            default_multiplier = float(Fraction(str(default_multiplier)))
        return cls(
            name=name,
            cjk_correction=float(Fraction(str(values.get("cjk_correction", CJK_CORRECTION)))),
            ligature_offset_multipliers=multipliers,
            default_ligature_offset_multiplier=default_multiplier,
            scale_ligature_offset=bool(values.get("scale_ligature_offset", False)),
        )

    def resolve(self, latin_width: float, cjk_width: float, ligature_width: float) -> "Grid":
        """Compute the grid from one reference advance width per source font."""
        for label, width in (("Latin", latin_width), ("CJK", cjk_width), ("ligature", ligature_width)):
            if width <= 0:
                raise ResourceUnavailable(f"{label} reference glyph has advance width {width}")
        cell_width = cjk_width / 2
        return Grid(
            profile=self,
            cell_width=cell_width,
            latin_ratio=cell_width / latin_width,
            ligature_ratio=cell_width / ligature_width,
        )


@dataclass(frozen=True)
class Grid:
    """Scale ratios and offsets of one build, see LayoutProfile.resolve."""
    profile: LayoutProfile
    cell_width: float
    latin_ratio: float
    ligature_ratio: float

    @property
    def cjk_ratio(self) -> float:
        return self.profile.cjk_correction

    @property
    def advance_width(self) -> int:
        return round(self.cell_width)

    @property
    def cjk_advance_width(self) -> int:
        return 2 * self.advance_width

    @property
    def cjk_offset(self) -> float:
        # Center the corrected outline in its double cell
        return self.cjk_advance_width * (1 - self.cjk_ratio) / 2

    def ligature_offset(self, length: int) -> float:
        default = self.profile.default_ligature_offset_multiplier
        if default is None:
            default = length - 1
        multiplier = self.profile.ligature_offset_multipliers.get(length, default)
        offset = multiplier * self.cell_width
        if self.profile.scale_ligature_offset:
            offset *= self.ligature_ratio
        return offset

    def ligature_advance_width(self, length: int) -> int:
        return length * self.advance_width


def transform_outline(outline, scale_x: float, scale_y: float | None = None, offset_x: float = 0):
    """
    Scale an outline and shift it horizontally.

    Each x becomes round(x * scale_x + offset_x) and each y becomes
    round(y * scale_y). round() is nearest integer with ties to even.
    scale_y defaults to scale_x. Returns a new tuple of PathCommands.
    """
    if scale_y is None:
        scale_y = scale_x
    return tuple(
        PathCommand(
            command.type,
            tuple((round(x * scale_x + offset_x), round(y * scale_y)) for x, y in command.points),
        )
        for command in outline
    )


# ---------------------------------------------------------------------------
# Glyph table
# ---------------------------------------------------------------------------

def glyph_name_for(script_tag: str, codepoint: int) -> str:
    return f"{script_tag}{codepoint:04x}"


class GlyphTable:
    """Append-only glyph list with its character and ligature indexes."""

    def __init__(self, notdef_width: int):
        self.glyphs: list[GlyphRecord] = [
            GlyphRecord(name=".notdef", unicode=None, advance_width=notdef_width, outline=())
        ]
        self.char_to_index: dict[str, int] = {}
        self.ligature_to_index: dict[tuple[str, int], int] = {}
        self.warnings: list[BuildWarning] = []
        self._names = {".notdef"}

    def __len__(self):
        return len(self.glyphs)

    def append(self, glyph: GlyphRecord) -> int:
        if glyph.name in self._names:
            raise ValueError(f"Duplicate glyph name: {glyph.name}")
        self._names.add(glyph.name)
        self.glyphs.append(glyph)
        return len(self.glyphs) - 1

    def unique_name(self, name: str) -> str:
        candidate = name
        suffix = 2
        while candidate in self._names:
            candidate = f"{name}.{suffix}"
            suffix += 1
        return candidate

    def warn(self, kind: str, message: str, code_point=None, glyph_name=None):
        self.warnings.append(BuildWarning(kind, message, code_point, glyph_name))


def copy_glyphs(
    table: GlyphTable,
    font,
    subset: list[int],
    script_tag: str,
    label: str,
    ratio: float,
    advance_width: int,
    offset_x: float = 0,
) -> int:
    """
    Copy the glyphs of subset from font into table, scaled by ratio.

    Code points already in the table are skipped (first writer wins).
    Characters font has no glyph for are reported as warnings.
    Returns the number of glyphs added.
    """
    added = 0
    for cp in subset:
        c = chr(cp)
        if c in table.char_to_index:
            continue
        if not font.has_glyph_for_character(c):
            table.warn(
                "missing-glyph",
                f"missing glyph in {label} font: {c} (U+{cp:04X})",
                code_point=cp,
            )
            continue

        glyph = font.glyph_for_character(c)
        outline = transform_outline(glyph.outline, ratio, ratio, offset_x)
        table.char_to_index[c] = table.append(GlyphRecord(
            name=glyph_name_for(script_tag, cp),
            unicode=cp,
            advance_width=advance_width,
            outline=outline,
        ))
        added += 1
    return added


def compose_glyph_table(
    grid: Grid,
    latin_font,
    cjk_font,
    ligature_font,
    latin_subset: list[int],
    cjk_subset: list[int],
    ligature_subset: list[int],
) -> GlyphTable:
    """
    Build the per-character part of the glyph table.

    Order: .notdef, then the ligature font's characters (they are drawn
    to match its ligatures), then Latin, then CJK.
    """
    table = GlyphTable(notdef_width=grid.advance_width)
    copy_glyphs(
        table, ligature_font, ligature_subset, SCRIPT_LIGATURE, "ligature",
        ratio=grid.ligature_ratio, advance_width=grid.advance_width,
    )
    copy_glyphs(
        table, latin_font, latin_subset, SCRIPT_LATIN, "Latin",
        ratio=grid.latin_ratio, advance_width=grid.advance_width,
    )
    copy_glyphs(
        table, cjk_font, cjk_subset, SCRIPT_CJK, "CJK",
        ratio=grid.cjk_ratio, advance_width=grid.cjk_advance_width,
        offset_x=grid.cjk_offset,
    )
    return table


def add_ligature_glyph(table: GlyphTable, glyph: GlyphRecord, length: int, grid: Grid) -> int:
    """Append a ligature glyph spanning length cells, or reuse an earlier copy."""
    key = (glyph.name, length)
    if key in table.ligature_to_index:
        return table.ligature_to_index[key]

    outline = transform_outline(
        glyph.outline, grid.ligature_ratio, grid.ligature_ratio, grid.ligature_offset(length)
    )
    index = table.append(GlyphRecord(
        name=table.unique_name(glyph.name),
        unicode=None,
        advance_width=grid.ligature_advance_width(length),
        outline=outline,
    ))
    table.ligature_to_index[key] = index
    return index


def build_ligature_table(table: GlyphTable, ligature_font, rules, grid: Grid) -> list[SubstitutionRule]:
    """
    Add the ligature glyphs to table and return their substitution rules.

    A rule with fewer than two characters, or whose glyph is missing from
    the ligature font, is skipped with a warning. A rule whose characters
    are not all in the table raises MissingSubstitutionInput.
    """
    substitutions = []
    for rule in rules:
        if len(rule.sequence) < 2:
            table.warn(
                "invalid-ligature",
                f"ligature {rule.sequence!r} -> {rule.target_glyph_name} needs at least two characters",
                glyph_name=rule.target_glyph_name,
            )
            continue

        glyph = ligature_font.glyph_by_name(rule.target_glyph_name)
        if glyph is None:
            table.warn(
                "missing-ligature-glyph",
                f"missing ligature glyph: {rule.target_glyph_name}",
                glyph_name=rule.target_glyph_name,
            )
            continue

        index = add_ligature_glyph(table, glyph, len(rule.sequence), grid)
        inputs = []
        for c in rule.sequence:
            if c not in table.char_to_index:
                raise MissingSubstitutionInput(
                    f"Ligature {rule.sequence!r} -> {rule.target_glyph_name}: "
                    f"no glyph for {c} (U+{ord(c):04X})",
                    warnings=table.warnings,
                )
            inputs.append(table.char_to_index[c])
        substitutions.append(SubstitutionRule(tuple(inputs), index, feature="calt"))
    return substitutions


# ---------------------------------------------------------------------------
# Build
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SourceConfig:
    font: Path
    data: Path
    reference_character: str


@dataclass(frozen=True)
class BuildConfig:
    metadata: dict
    latin: SourceConfig
    cjk: SourceConfig
    ligature: SourceConfig
    output_dir: Path
    profile: LayoutProfile

    @property
    def font_name(self) -> str:
        return self.metadata["font_name"]

    @property
    def style_name(self) -> str:
        return self.metadata.get("style_name", "Regular")

    @property
    def output_path(self) -> Path:
        return self.output_dir / f"{self.font_name.replace(' ', '')}-{self.style_name}.otf"


def load_build_config(path=DEFAULT_CONFIG_PATH) -> BuildConfig:
    """Load build settings from YAML. Relative paths resolve against its directory."""
    path = Path(path)
    try:
        data = yaml.safe_load(read_text(path))
        base = path.parent

        def source(key: str, data_key: str) -> SourceConfig:
            entry = data["sources"][key]
            return SourceConfig(
                font=base / entry["font"],
                data=base / entry[data_key],
                reference_character=entry["reference_character"],
            )

        profile_name = data.get("layout_profile", "grid")
        profiles = data.get("layout_profiles") or {}
        if profile_name not in profiles and profile_name != "grid":
            raise KeyError(f"layout profile {profile_name!r}")

        return BuildConfig(
            metadata=data["metadata"],
            latin=source("latin", "subset"),
            cjk=source("cjk", "subset"),
            ligature=source("ligature", "definitions"),
            output_dir=base / data.get("output_dir", "output"),
            profile=LayoutProfile.from_config(profile_name, profiles.get(profile_name)),
        )
    except (yaml.YAMLError, KeyError, TypeError, ValueError) as e:
        raise ResourceUnavailable(f"Invalid build config {path}: {e}") from e


@dataclass
class BuildResult:
    font: CompositeFont
    substitutions: list[SubstitutionRule]
    warnings: list[BuildWarning]
    grid: Grid
    output_path: Path | None = None


def reference_width(font, char: str) -> float:
    if not font.has_glyph_for_character(char):
        raise ResourceUnavailable(f"{font} has no glyph for reference character {char!r}")
    return font.advance_width(char)


def compose_font(config: BuildConfig, latin_font=None, cjk_font=None, ligature_font=None) -> BuildResult:
    """
    Load definitions and source fonts and compose the font in memory.

    Source fonts are loaded from the configured paths unless given.
    """
    print("Loading data")
    latin_subset = load_subset_data(config.latin.data)
    cjk_subset = load_subset_data(config.cjk.data)
    ligature_data = load_ligature_data(config.ligature.data)
    latin_font = latin_font or SourceFont.load(config.latin.font)
    cjk_font = cjk_font or SourceFont.load(config.cjk.font)
    ligature_font = ligature_font or SourceFont.load(config.ligature.font)

    grid = config.profile.resolve(
        latin_width=reference_width(latin_font, config.latin.reference_character),
        cjk_width=reference_width(cjk_font, config.cjk.reference_character),
        ligature_width=reference_width(ligature_font, config.ligature.reference_character),
    )

    print("Copying glyphs")
    table = compose_glyph_table(
        grid, latin_font, cjk_font, ligature_font,
        latin_subset, cjk_subset, ligature_data.subset,
    )

    print("Copying ligature glyphs")
    substitutions = build_ligature_table(table, ligature_font, ligature_data.rules, grid)

    # The CJK correction shrinks outlines, so shrink the em with them
    ratio = grid.cjk_ratio
    font = CompositeFont(
        family_name=config.font_name,
        style_name=config.style_name,
        version=str(config.metadata.get("version", "1.000")),
        units_per_em=round(cjk_font.units_per_em * ratio),
        ascender=round(cjk_font.ascender * ratio),
        descender=round(cjk_font.descender * ratio),
        glyphs=tuple(table.glyphs),
        metadata=config.metadata,
    )
    return BuildResult(font, substitutions, table.warnings, grid)


def write_file_atomic(path: Path, data: bytes):
    tmp_path = path.with_name(path.name + ".tmp")
    tmp_path.write_bytes(data)
    tmp_path.replace(path)


def build_font(config: BuildConfig, **source_fonts) -> BuildResult:
    """
    Compose the font and write it to config.output_path.

    The generated feature code is saved next to the font as .fea.
    """
    result = compose_font(config, **source_fonts)

    print("Generating a font")
    try:
        data = serialize(result.font, result.substitutions)
    except FontBuildError as e:
        e.warnings = result.warnings + e.warnings
        raise

    output_path = config.output_path
    output_path.parent.mkdir(parents=True, exist_ok=True)
    write_file_atomic(output_path, data)

    fea_code = generate_calt_fea([g.name for g in result.font.glyphs], result.substitutions)
    if fea_code:
        fea_path = output_path.with_suffix(".fea")
        fea_path.write_text(fea_code + "\n", encoding="utf-8")
        print(f"  Feature code saved to: {fea_path}")

    result.output_path = output_path

    # Print summary
    print(f"Font saved to: {output_path}")
    print(f"  Glyphs: {len(result.font.glyphs)}")
    print(f"  Ligatures: {len(result.substitutions)}")
    print(f"  Units per em: {result.font.units_per_em}")
    print(f"  Cell width: {result.grid.advance_width} units")
    print(f"  Layout profile: {config.profile.name}")
    return result


def main():
    if len(sys.argv) > 1:
        print("Usage: uv run python build_font.py")
        print(f"\nSettings are read from {DEFAULT_CONFIG_PATH.name}.")
        sys.exit(1)

    try:
        config = load_build_config(DEFAULT_CONFIG_PATH)
        result = build_font(config)
    except FontBuildError as e:
        for warning in e.warnings:
            print(f"WARN: {warning}")
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    for warning in result.warnings:
        print(f"WARN: {warning}")


if __name__ == "__main__":
    main()
