import logging

import idaapi, ida_ida, ida_kernwin, ida_nalt, ida_name, ida_segment

import mapfile

VERSION = "0.1.0"

SET_NAME_FLAGS = ida_name.SN_NOCHECK | ida_name.SN_NOWARN | ida_name.SN_FORCE
"""Invalid characters are replaced and existing names overwritten."""

ABOUT_ARG = 1
"""Plugin argument that shows the about box instead of loading a file."""

FILE_FILTER = "FILTER Map files|*.map|All files|*.*\nSelect MAP file"
"""ask_file prompt offering map files first, then any file."""

log = logging.getLogger("mapldr")


class MessageHandler(logging.Handler):
  """Writes log records to the IDA output window."""

  def __init__(self):
    super().__init__()
    self.setFormatter(logging.Formatter("[MAP Loader][%(levelname)s] %(message)s"))

  def emit(self, record):
    ida_kernwin.msg(self.format(record) + "\n")


def install_log_handler():
  if not any(isinstance(h, MessageHandler) for h in log.handlers):
    log.addHandler(MessageHandler())
  log.setLevel(logging.INFO)
  log.propagate = False


# def current_platform() -> mapfile.Platform:
def current_platform():
  return mapfile.WIDE if ida_ida.inf_is_64bit() else mapfile.NARROW


# def read_sections() -> list[mapfile.Section]:
def read_sections():
  sections = []
  for n in range(ida_segment.get_segm_qty()):
    seg = ida_segment.getnseg(n)
    # a gap would shift every later segment index
    if seg is None:
      log.error("Could not get segment %d", n + 1)
      return []
    sections.append(mapfile.Section(seg.start_ea, seg.end_ea - seg.start_ea, ida_segment.get_segm_name(seg)))
  return sections


# def set_label(address: int, name: str) -> bool:
def set_label(address, name):
  return bool(ida_name.set_name(address, name, SET_NAME_FLAGS))


# def load_symbols() -> mapfile.ParseResult | None:
def load_symbols():
  file_path = ida_kernwin.ask_file(False, "*.map", FILE_FILTER)
  if not file_path:
    log.error("No file selected")
    return None
  log.info("File: %s", file_path)

  platform = current_platform()
  digits = platform.address_digits
  log.info("%0*X %s", digits, ida_nalt.get_imagebase(), ida_nalt.get_root_filename())

  try:
    applier = mapfile.SectionApplier(read_sections(), set_label)
  except mapfile.NoSectionsError as e:
    log.error("%s", e)
    return None
  for section in applier.sections:
    log.info("  %s", section.format(platform))

  try:
    result = mapfile.parse_map(file_path, applier, platform)
  except mapfile.MapFileError as e:
    log.error("%s", e)
    return None

  if not result.header_found:
    log.warning("Did not find symbol table header")
  log.info("Applied %d/%d names.", result.applied, result.matched)
  return result


def about():
  ida_kernwin.info("MapLdr v%s\n\n"
                   "Applies public symbol names from MSVC linker MAP files\n"
                   "to the segments of the current database." % VERSION)


class MapLoaderPlugin(idaapi.plugin_t):
  flags = idaapi.PLUGIN_PROC
  comment = "MSVC MAP file loader"
  help = "This plugin applies public symbol names from MSVC .map files to the IDB segments."
  wanted_name = "MAP loader"
  wanted_hotkey = "Shift+M"

  def init(self):
    install_log_handler()
    return idaapi.PLUGIN_KEEP

  def term(self):
    pass

  def run(self, arg):
    if arg == ABOUT_ARG:
      about()
    else:
      load_symbols()


def PLUGIN_ENTRY():
  return MapLoaderPlugin()
