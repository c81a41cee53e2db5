from mentat.cli import app

app()
