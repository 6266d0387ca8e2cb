import getpass
import logging
import sys

import hopedit

logging.basicConfig(level=logging.DEBUG, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

# Appends a line to a file behind a hop chain, e.g.
#   python examples/remote_edit.py 'ssh:build.example.com|sudo:askpw:/etc/motd' "hello"
# Hops marked askpw prompt on the terminal.
path, line = sys.argv[1], sys.argv[2]

hopedit.configure(timeout=30.0, ask_password=lambda hop: getpass.getpass(f"password for {hop}: "))

with hopedit.Buffer.open(path) as buf:
    print("name:", buf.name, "transform:", buf.transform)
    buf.insert_text_at(buf.contents.len_chars(), line + "\n")
    buf.write()
    print("modified after write:", buf.modified)

hopedit.shutdown()
