from payshare.schemas import FileCreate, UserCreate

EARNINGS = 450


async def make_user(ledger, name: str = "alice"):
    return await ledger.create_user(
        UserCreate(external_id=f"uid-{name}", username=name, email=f"{name}@example.com", display_name=name.title())
    )


async def make_file(ledger, owner_id: int, title: str = "Lecture notes"):
    return await ledger.create_file(
        FileCreate(
            title=title,
            description="Week 1",
            file_name="notes.pdf",
            file_size=2048,
            file_type="application/pdf",
            download_url="users/1/uploads/notes.pdf",
            tags=["course", "pdf"],
        ),
        owner_id=owner_id,
    )
