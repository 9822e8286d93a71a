from rackstock import create_app

app = create_app()
