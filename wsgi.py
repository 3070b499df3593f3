import os

from educafric import create_app

app = create_app(os.environ.get('FLASK_ENV', 'production'))


def main():
    # This is for local development only.
    # In production, Gunicorn serves wsgi:app (see gunicorn_config.py).
    port = int(os.environ.get('PORT', 5000))
    print("\n" + "=" * 50)
    print("Starting local development server...")
    print(f"Access the API at: http://127.0.0.1:{port}/health")
    print("=" * 50 + "\n")
    app.run(host='0.0.0.0', port=port, debug=app.config['DEBUG'])


if __name__ == '__main__':
    main()
