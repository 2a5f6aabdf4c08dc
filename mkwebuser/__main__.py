from mkwebuser.cli import run

run()
