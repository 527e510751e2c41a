from fastapi import FastAPI

app = FastAPI()
books = []


@app.get("/books")
def list_books():
    return books
=== END FILE ===