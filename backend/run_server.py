import sys
import os
import uvicorn

# Add current directory to sys.path
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

if __name__ == "__main__":
    port = int(os.getenv("PORT", "8000"))
    print(f"Starting relay on port {port}...")
    uvicorn.run("app.main:app", host="0.0.0.0", port=port, reload=False)
