from garage_api.main import run

run()
