# eclkit

`eclkit` is a library for the binary ECL enemy-script files of the Touhou
Project games from Mountain of Faith (10) onwards. It parses a compiled
`.ecl` file into an in-memory model of subroutines and instructions, and
encodes such a model back into the binary format. It also loads map files
that give names and signatures to instructions and global variables.

Supported versions are 10, 103, 11, 12, 125, 128, 13, 14, 143, 15, 16, 165,
17, 18, 185 and 19.

## Installation

```
pip install .
```

The package has no runtime dependencies beyond the Python standard library.

## Modules

- `eclkit.eclmap` — `EclMap`, the maps from instruction and variable numbers
  to names and signatures. `EclMap.load(stream, filename)` reads a map file,
  `EclMap.rebuild()` refreshes the set of known mnemonics and
  `EclMap.is_mnemonic(name)` looks a name up in it. Invalid entries are
  skipped and recorded in `EclMap.diagnostics`; a line whose key is not a
  number raises `EclMapError`.
- `eclkit.model` — the data model (`Ecl`, `Sub`, `Instr`, `Param`, `Label`,
  `Variable`, `InstrType`), the `Options` that affect reading and writing,
  version predicates (`is_post_th10`, `is_post_th13`,
  `is_numeric_difficulty_version`, `get_default_none_rank`) and the value
  codecs (`decode_value`, `encode_value`, `value_size`, `value_to_text`,
  `format_float`, `xor_bytes`). Malformed data raises `EclError`.
- `eclkit.th10_formats` — the parameter format tables.
  `find_format(version, id, is_timeline, eclmap)` returns the format string of
  an instruction; a signature in the map takes precedence, and a version
  searches its own table and then those of every older game.
- `eclkit.th10_reader` — `open_ecl(data, version, options)` parses the bytes
  of an ECL file, inserting label markers at jump targets;
  `trans(ecl, options)` derives stack sizes and sub arities and adds forward
  declarations for subs that are called but not defined.
- `eclkit.th10_writer` — `compile_ecl(ecl, out, options)` writes a binary ECL
  file to a binary stream, `serialize_instr` and `instr_size` encode and
  measure single instructions, and `create_header(ecl, out)` writes
  declarations of the subs as script text.

Warnings found while reading or writing (unknown opcodes, argument count
mismatches, unknown sub calls) are appended to `Options.diagnostics` and
logged; they do not stop the work.

## Map files

Sections start with a control line; entries are a number followed by a
value, and `#` starts a comment. Loading starts in the `ins_names` section.

```
!eclmap
!ins_names
10 return_normal
!ins_signatures
10
!gvar_names
-9982 I3
!gvar_types
-9982 $
```

Names must be valid identifiers, must not start with `ins_` and must not be
keywords of the script language. Variable types are `$` (integer) or `%`
(float).

## Example

```python
import io
from eclkit.eclmap import EclMap
from eclkit.model import Ecl, Instr, Options, Sub
from eclkit.th10_reader import open_ecl, trans
from eclkit.th10_writer import compile_ecl

options = Options(eclmap=EclMap())

with open("stage1.ecl", "rb") as f:
    ecl = open_ecl(f.read(), 13, options)
trans(ecl, options)
for sub in ecl.subs:
    print(sub.name, sub.arity, len(sub.instrs))

script = Ecl(version=13, subs=[Sub(name="main", instrs=[Instr(id=10)])])
out = io.BytesIO()
compile_ecl(script, out, options)
```

## What the package does not do

- There is no command-line program; everything is used from Python.
- It does not turn a parsed file into readable script text, and it does not
  compile script source text; instructions for writing must be built as
  model objects.
- Only the th10-family format is handled. The older games (6, 7, 8, 9, 95)
  are not read or written.