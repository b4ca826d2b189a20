from app.lokok import create_app

app = create_app()
