import os
import uvicorn
from dotenv import load_dotenv

def main():
    base_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
    dotenv_path = os.path.join(base_dir, '.env')
    print(f"Loading env from {dotenv_path}...")
    load_dotenv(dotenv_path)

    db_url = os.environ.get("DATABASE_URL")
    print(f"DATABASE_URL: {db_url[:20]}..." if db_url else "DATABASE_URL: not set, using local SQLite")

    port = int(os.environ.get("PORT", "8000"))
    print(f"Starting app at http://0.0.0.0:{port}")
    uvicorn.run("repdesk.main:app", host="0.0.0.0", port=port, reload=False)

if __name__ == "__main__":
    main()
