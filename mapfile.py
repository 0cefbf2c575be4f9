"""MSVC linker MAP file reader.

Only the "Address  Publics by Value" (or "by Name") table is read. Every
`segment:offset name` line after that header is resolved against the
section list of a loaded module and handed to an applier.
"""
import argparse
import logging
import re
import sys

log = logging.getLogger("mapldr")

HEADER_PATTERN = re.compile(r"\s*Address\s+Publics\s+by\s+(?:Value|Name)\s*", re.ASCII)
"""Start of the symbol table. Whitespace is ASCII only."""

RECORD_PATTERN = re.compile(r"\s*([0-9a-fA-F]{4,8}):([0-9a-fA-F]{8,16})\s+([\x21-\x7e][\x20-\x7e]*?)\s*", re.ASCII)
"""segment:offset followed by a printable name."""


class Platform:
  # def __init__(self, name: str, segment_bits: int, offset_bits: int):
  def __init__(self, name, segment_bits, offset_bits):
    self.name = name
    self.segment_bits = segment_bits
    self.offset_bits = offset_bits

  @property
  def segment_max(self):
    return (1 << self.segment_bits) - 1

  @property
  def offset_max(self):
    return (1 << self.offset_bits) - 1

  @property
  def address_digits(self):
    return self.offset_bits // 4

  def __repr__(self):
    return "Platform(%s)" % self.name


NARROW = Platform("x86", 16, 32)
"""32-bit targets."""

WIDE = Platform("x64", 32, 64)
"""64-bit targets."""


class MapLoaderError(Exception):
  pass


class MapFileError(MapLoaderError):
  # def __init__(self, path: str, reason: str):
  def __init__(self, path, reason):
    super().__init__("Could not open map file %s: %s" % (path, reason))
    self.path = path


class NoSectionsError(MapLoaderError):
  def __init__(self):
    super().__init__("Could not get sections")


class Symbol:
  # def __init__(self, segment: int, offset: int, name: str):
  def __init__(self, segment, offset, name):
    # 1-based section index
    self.segment = segment
    # relative to the section base
    self.offset = offset
    # as written, may contain spaces
    self.name = name

  def __str__(self):
    return "%04X:%08X %s" % (self.segment, self.offset, self.name)

  def __repr__(self):
    return "Symbol(%d, %#x, %r)" % (self.segment, self.offset, self.name)


class Section:
  # def __init__(self, base: int, size: int, name: str = ""):
  def __init__(self, base, size, name=""):
    self.base = base
    self.size = size
    self.name = name

  # def format(self, platform: Platform) -> str:
  def format(self, platform):
    digits = platform.address_digits
    return "%0*X %0*X %s" % (digits, self.base, digits, self.size, self.name)

  def __repr__(self):
    return "Section(%#x, %#x, %r)" % (self.base, self.size, self.name)


class ParseResult:
  def __init__(self):
    self.header_found = False
    # record lines after the header
    self.matched = 0
    # records the applier accepted
    self.applied = 0

  def __int__(self):
    return self.applied

  def __repr__(self):
    return "ParseResult(header_found=%s, matched=%d, applied=%d)" % (
      self.header_found, self.matched, self.applied)


class SectionApplier:
  """Resolves segment:offset against a section list and records labels.

  `set_label(address, name)` does the recording and returns whether it
  succeeded. Out-of-range segments and offsets past the end of a section
  are rejected, never clamped.
  """

  # def __init__(self, sections: list[Section], set_label: Callable[[int, str], bool]):
  def __init__(self, sections, set_label):
    if not sections:
      raise NoSectionsError()
    self.sections = sections
    self.set_label = set_label

  # def resolve(self, segment: int, offset: int) -> int | None:
  def resolve(self, segment, offset):
    if segment < 1 or segment > len(self.sections):
      log.debug("Segment %04X out of range (%d sections)", segment, len(self.sections))
      return None
    section = self.sections[segment - 1]
    # the end of a section is a valid label position
    if offset > section.size:
      log.debug("Offset %X past end of section %d (%X)", offset, segment, section.size)
      return None
    return section.base + offset

  # def resolve_and_apply(self, segment: int, offset: int, name: str) -> bool:
  def resolve_and_apply(self, segment, offset, name):
    address = self.resolve(segment, offset)
    if address is None:
      return False
    return bool(self.set_label(address, name))

  __call__ = resolve_and_apply


# def match_header(line: str) -> bool:
def match_header(line):
  return HEADER_PATTERN.fullmatch(line) is not None


# def match_record(line: str, platform: Platform) -> Symbol | None:
def match_record(line, platform=WIDE):
  match = RECORD_PATTERN.fullmatch(line)
  if match is None:
    return None
  segment = int(match.group(1), 16)
  offset = int(match.group(2), 16)
  if segment > platform.segment_max or offset > platform.offset_max:
    log.debug("Field too wide for %s: %s", platform.name, line.strip())
    return None
  return Symbol(segment, offset, match.group(3))


# def parse_lines(lines: Iterable[str], applier: Callable[[int, int, str], bool], platform: Platform) -> ParseResult:
def parse_lines(lines, applier, platform=WIDE):
  result = ParseResult()
  for line in lines:
    # only the first table is read
    if not result.header_found:
      result.header_found = match_header(line)
      continue
    symbol = match_record(line, platform)
    if symbol is None:
      continue
    result.matched += 1
    if applier(symbol.segment, symbol.offset, symbol.name):
      result.applied += 1
    else:
      log.debug("Rejected %s", symbol)
  return result


# def open_map(path: str):
def open_map(path):
  try:
    return open(path, "r", encoding="latin-1")
  except OSError as e:
    raise MapFileError(path, e.strerror or str(e)) from e


# def read_lines(file, path: str) -> Iterator[str]:
def read_lines(file, path):
  while True:
    try:
      line = next(file)
    except StopIteration:
      return
    except OSError as e:
      raise MapFileError(path, e.strerror or str(e)) from e
    yield line


# def parse_map(path: str, applier: Callable[[int, int, str], bool], platform: Platform) -> ParseResult:
def parse_map(path, applier, platform=WIDE):
  with open_map(path) as file:
    return parse_lines(read_lines(file, path), applier, platform)


# def parse_section(value: str) -> Section:
def parse_section(value):
  parts = value.split(":", 2)
  if len(parts) < 2:
    raise argparse.ArgumentTypeError("expected BASE:SIZE[:NAME], got %r" % value)
  try:
    base = int(parts[0], 16)
    size = int(parts[1], 16)
  except ValueError:
    raise argparse.ArgumentTypeError("BASE and SIZE must be hexadecimal: %r" % value)
  name = parts[2] if len(parts) == 3 else ""
  return Section(base, size, name)


def build_parser():
  parser = argparse.ArgumentParser(
    prog="mapfile",
    description="List or resolve the public symbols of an MSVC linker MAP file.")
  parser.add_argument("path", help="MAP file to read")
  width = parser.add_mutually_exclusive_group()
  width.add_argument("--narrow", dest="platform", action="store_const", const=NARROW,
                     help="16-bit segments, 32-bit offsets")
  width.add_argument("--wide", dest="platform", action="store_const", const=WIDE,
                     help="32-bit segments, 64-bit offsets (default)")
  parser.add_argument("--section", dest="sections", action="append", type=parse_section,
                      default=[], metavar="BASE:SIZE[:NAME]",
                      help="loaded section, in segment order (hex)")
  parser.add_argument("-v", "--verbose", action="store_true", help="log rejected records")
  parser.set_defaults(platform=WIDE)
  return parser


# def main(argv: list[str] | None = None) -> int:
def main(argv=None):
  args = build_parser().parse_args(argv)
  logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                      format="[MAP Loader][%(levelname)s] %(message)s")
  platform = args.platform

  def print_label(address, name):
    print("%0*X %s" % (platform.address_digits, address, name))
    return True

  def print_record(segment, offset, name):
    print(Symbol(segment, offset, name))
    return True

  if args.sections:
    applier = SectionApplier(args.sections, print_label)
  else:
    applier = print_record

  try:
    result = parse_map(args.path, applier, platform)
  except MapFileError as e:
    log.error("%s", e)
    return 1

  if not result.header_found:
    log.error("Did not find symbol table header in %s", args.path)
    return 3
  print("Applied %d/%d names." % (result.applied, result.matched))
  return 0


if __name__ == "__main__":
  sys.exit(main())
