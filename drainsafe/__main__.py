from drainsafe.cli import app

app(prog_name="drainsafe")
