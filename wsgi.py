from qadesk import create_app

app = create_app()
