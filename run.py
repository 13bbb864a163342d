"""
Entry point for Flask.

Usage (from project root):

    flask --app run.py init-db
    flask --app run.py seed-users
    flask --app run.py --debug run

"""

from proctrack import create_app

# WSGI application object; `flask run` and WSGI servers look for `app`.
app = create_app()

if __name__ == "__main__":
    # Dev only; use a WSGI server in production.
    app.run(debug=True)
