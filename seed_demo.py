# seed_demo.py
import os

import requests

BASE_URL = os.getenv("LIBRARY_BASE_URL", "http://localhost:5000")
ADMIN_USERNAME = os.getenv("DEFAULT_ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.getenv("DEFAULT_ADMIN_PASSWORD", "admin123")

BOOKS = [
    {
        "isbn": "978-0132350884",
        "title": "Clean Code",
        "author": "Robert C. Martin",
        "publisher": "Prentice Hall",
        "publicationYear": 2008,
        "category": "Software Engineering",
    },
    {
        "isbn": "978-0201616224",
        "title": "The Pragmatic Programmer",
        "author": "Andrew Hunt, David Thomas",
        "publisher": "Addison-Wesley",
        "publicationYear": 1999,
        "category": "Software Engineering",
    },
    {
        "isbn": "978-0131103627",
        "title": "The C Programming Language",
        "author": "Brian W. Kernighan, Dennis M. Ritchie",
        "publisher": "Prentice Hall",
        "publicationYear": 1988,
        "category": "Programming Languages",
    },
    {
        "isbn": "978-0134685991",
        "title": "Effective Java",
        "author": "Joshua Bloch",
        "publisher": "Addison-Wesley",
        "publicationYear": 2018,
        "category": "Programming Languages",
    },
    {
        "isbn": "978-0262033848",
        "title": "Introduction to Algorithms",
        "author": "Cormen, Leiserson, Rivest, Stein",
        "publisher": "MIT Press",
        "publicationYear": 2009,
        "category": "Computer Science",
    },
    {
        "isbn": "978-1491950357",
        "title": "Designing Data-Intensive Applications",
        "author": "Martin Kleppmann",
        "publisher": "O'Reilly Media",
        "publicationYear": 2017,
        "category": "Computer Science",
    },
]

MEMBERS = [
    {"firstName": "Alice", "lastName": "Example", "email": "alice@example.com", "password": "alice123"},
    {"firstName": "Bob", "lastName": "Sample", "email": "bob@example.com", "password": "bob12345"},
]


def check_service(url):
    """Hit /api/health and return True/False."""
    health_url = f"{url.rstrip('/')}/api/health"
    try:
        r = requests.get(health_url, timeout=3)
        print(f"[CHECK] {health_url} -> {r.status_code}")
        return r.ok
    except Exception as e:
        print(f"[ERROR] library service not reachable at {health_url}: {e}")
        return False


def login():
    resp = requests.post(
        f"{BASE_URL}/api/auth/admin-login",
        json={"username": ADMIN_USERNAME, "password": ADMIN_PASSWORD},
        timeout=5,
    )
    resp.raise_for_status()
    return {"Authorization": f"Bearer {resp.json()['token']}"}


def seed_books(headers):
    print("\n== Seeding books ==")
    book_ids = []
    for i, book in enumerate(BOOKS, start=1):
        payload = dict(book)
        # vary copies per title to make availability more interesting
        payload["totalCopies"] = 2 + (i % 4)  # 2–5 copies

        try:
            resp = requests.post(f"{BASE_URL}/api/books", headers=headers, json=payload, timeout=5)
            print(f"  [{i:02}] {book['title']} -> {resp.status_code}")
            if resp.ok:
                book_ids.append(resp.json()["data"]["bookId"])
            else:
                print(f"      Body: {resp.text.strip()}")
        except Exception as e:
            print(f"  [{i:02}] {book['title']} -> FAILED: {e}")
    return book_ids


def seed_members(headers):
    print("\n== Seeding members ==")
    member_ids = []
    for m in MEMBERS:
        try:
            resp = requests.post(f"{BASE_URL}/api/members", headers=headers, json=m, timeout=5)
            print(f"  {m['email']}: {resp.status_code}")
            if resp.ok:
                member_ids.append(resp.json()["data"]["memberId"])
        except Exception as e:
            print(f"  {m['email']}: FAILED -> {e}")
    return member_ids


def seed_loans(headers, member_ids, book_ids):
    print("\n== Issuing a few loans ==")
    for member_id, book_id in zip(member_ids, book_ids):
        resp = requests.post(
            f"{BASE_URL}/api/transactions/issue",
            headers=headers,
            json={"memberId": member_id, "bookId": book_id},
            timeout=5,
        )
        print(f"  member {member_id} <- book {book_id}: {resp.status_code}")


def main():
    print("Checking library service...")
    if not check_service(BASE_URL):
        print(f"\nLibrary service is not reachable. Make sure it is running at {BASE_URL}.")
        return

    headers = login()
    book_ids = seed_books(headers)
    member_ids = seed_members(headers)
    seed_loans(headers, member_ids, book_ids)

    print("\nDone.")
    print("Try hitting:")
    print(f"  {BASE_URL}/api/books")
    print(f"and open {BASE_URL}/ in the browser.")


if __name__ == "__main__":
    main()
