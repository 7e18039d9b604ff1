from colloquy.main import app

app()
