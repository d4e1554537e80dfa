import os

from waitress import serve

from fasten import create_app

app = create_app()

if __name__ == '__main__':
    host = os.getenv('HOST', '127.0.0.1')
    port = int(os.getenv('PORT', '5050'))
    print(f"fasten-records server starting on http://{host}:{port} (waitress) ...")
    print("Press Ctrl+C to stop.")
    serve(app, host=host, port=port, threads=4)
