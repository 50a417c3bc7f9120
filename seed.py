import logging

from catalog import CatalogStore
from database import Database
from identity import IdentityStore
from models import Book, Role

logger = logging.getLogger(__name__)

# Demo accounts; change these passwords on any real deployment.
INITIAL_USERS = [
    {"id": "admin-1", "username": "admin", "password": "123", "full_name": "Administrator",
     "role": Role.ADMIN, "avatar": "https://picsum.photos/id/1/200/200"},
    {"id": "lib-1", "username": "librarian", "password": "123", "full_name": "Head Librarian",
     "role": Role.LIBRARIAN},
    {"id": "user-1", "username": "user", "password": "123", "full_name": "Demo Reader",
     "role": Role.USER, "avatar": "https://picsum.photos/id/2/200/200"},
]

INITIAL_BOOKS = [
    Book(id="bk-1", title="The Alchemist", author="Paulo Coelho", category="Literature",
         publish_year=1988, total_stock=5, available_stock=5,
         image_url="https://picsum.photos/id/24/300/450",
         description="A best-selling fable about following one's dream.",
         language="English", translator="Alan R. Clarke", publisher="HarperCollins"),
    Book(id="bk-2", title="Clean Code", author="Robert C. Martin", category="Technology",
         publish_year=2008, total_stock=3, available_stock=3,
         image_url="https://picsum.photos/id/3/300/450",
         description="A handbook of agile software craftsmanship.",
         language="English", publisher="Prentice Hall"),
    Book(id="bk-3", title="How to Win Friends and Influence People", author="Dale Carnegie",
         category="Self-help", publish_year=1936, total_stock=10, available_stock=10,
         image_url="https://picsum.photos/id/4/300/450",
         description="The classic on getting along with people.",
         language="English", publisher="Simon & Schuster"),
    Book(id="bk-4", title="Sapiens: A Brief History of Humankind", author="Yuval Noah Harari",
         category="History", publish_year=2011, total_stock=4, available_stock=4,
         image_url="https://picsum.photos/id/5/300/450",
         description="How Homo sapiens came to dominate the planet.",
         language="English", publisher="Harvill Secker"),
    Book(id="bk-5", title="Thinking, Fast and Slow", author="Daniel Kahneman",
         category="Self-help", publish_year=2011, total_stock=6, available_stock=6,
         image_url="https://picsum.photos/id/6/300/450",
         description="The two systems that drive the way we think.",
         language="English", publisher="Farrar, Straus and Giroux"),
]


def seed_initial_data(db: Database) -> bool:
    """Load the demo users and books into an empty database.

    Runs once: a database that already has users is left untouched.
    Returns True when data was inserted.
    """
    if not db.is_empty():
        return False

    identity = IdentityStore(db)
    for item in INITIAL_USERS:
        identity._insert(
            user_id=item["id"],
            username=item["username"],
            full_name=item["full_name"],
            password=item["password"],
            role=item["role"],
            avatar=item.get("avatar"),
        )

    catalog = CatalogStore(db)
    with db.transaction() as conn:
        for book in INITIAL_BOOKS:
            catalog.persist_book(book, conn, insert=True)

    logger.info("Seeded %d users and %d books", len(INITIAL_USERS), len(INITIAL_BOOKS))
    return True
