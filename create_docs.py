import re

filenames = [
  "src/posekit/pose.py",
  "src/posekit/state.py",
  "src/posekit/peptides.py",
  "src/posekit/selections.py",
  "src/posekit/energy.py",
  "src/posekit/mutators.py",
  "src/posekit/drivers.py",
  "src/posekit/convert.py",
  # "src/posekit/log.py",
]

SECTIONS = ("Parameters:", "Returns:", "Raises:")

print() #  required

for filename in filenames:
  module_doc_start = False
  module_doc_end = False
  with open(filename) as f:
    # get import path
    filename_clean = filename[4:-3].split("/")
    import_statement = f"from {'.'.join(filename_clean[:-1])} import {filename_clean[-1]}"
    # print module title
    print(f"### {filename_clean[-1].upper()} MODULE")

    func = None
    for line in f:
      # get module doc
      if module_doc_start == False and line.strip() == '"""':
        module_doc_start = True
      elif module_doc_start == True and module_doc_end == False and line.strip() == '"""':
        module_doc_end = True
      elif module_doc_start == True and module_doc_end == False:
        print(line)

      # function doc, public module level functions only
      match = re.search(r"^def ([a-z]\w*\(.*)\:", line)
      if match:
        func = match.group(1)
        desc = ""
        in_doc = False
        section = None
        entries = {name: [] for name in SECTIONS}
        continue
      elif func is None:
        continue

      stripped = line.strip()
      if not in_doc:
        if stripped.startswith('"""'):
          in_doc = True
          stripped = stripped[3:]
          if stripped.endswith('"""'):
            desc, stripped = stripped[:-3], ""
            in_doc = False
          else:
            desc = stripped + " "
            continue
        else:
          func = None
          continue

      if in_doc and stripped.endswith('"""'):
        stripped = stripped[:-3].strip()
        in_doc = False
      if stripped in SECTIONS:
        section = stripped
      elif section is not None and stripped:
        if re.match(r"^\w[\w ]*:", stripped) or not entries[section]:
          entries[section].append(stripped)
        else:
          entries[section][-1] += " " + stripped
      elif section is None:
        desc += stripped + " "

      if not in_doc:
        print(f"#### {func.split('(')[0]}")
        print(f"```py\n{import_statement}\n{filename_clean[-1]}.{func}\n```")
        print("##### Description:")
        print(desc.strip())
        for name in SECTIONS:
          if entries[name]:
            print(f"##### {name}")
            for x in entries[name]:
              if ":" in x:
                t, d = x.split(":", 1)
                print(f"- **{t.strip()}**: {d.strip()}")
              else:
                print(f"- {x}")
        print()
        func = None
