from app.taxvault import create_app

app = create_app()
