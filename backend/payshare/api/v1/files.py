import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field

from payshare.api.deps import get_client_ip, get_current_user, get_current_user_optional, get_ledger, get_storage
from payshare.ledger import LedgerStore
from payshare.schemas import Comment, CommentCreate, DownloadCreate, File as FileRecord, FileCreate, FileUpdate, User
from payshare.services.storage import StorageService

logger = logging.getLogger(__name__)

router = APIRouter()


class UserSummary(BaseModel):
    id: int
    external_id: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


class FileResponse(BaseModel):
    id: int
    user_id: int
    title: str
    description: Optional[str]
    file_name: str
    file_size: int
    file_type: str
    share_token: str
    share_url: str
    tags: list[str]
    downloads: int
    rating: float
    total_ratings: int
    created_at: datetime
    owner: Optional[UserSummary] = None


class FileListResponse(BaseModel):
    files: list[FileResponse]
    total: int


class CommentResponse(BaseModel):
    id: int
    file_id: int
    user_id: int
    comment: str
    rating: int
    created_at: datetime
    author: Optional[UserSummary] = None


class SharedFileResponse(FileResponse):
    comments: list[CommentResponse]


class CommentRequest(BaseModel):
    comment: str = Field(min_length=1, max_length=2000)
    rating: int = Field(ge=1, le=5)


def summarize(user: Optional[User]) -> Optional[UserSummary]:
    if user is None:
        return None
    return UserSummary(
        id=user.id,
        external_id=user.external_id,
        display_name=user.display_name,
        avatar_url=user.avatar_url,
    )


async def user_summaries(ledger: LedgerStore, user_ids) -> dict[int, UserSummary]:
    return {u.id: summarize(u) for u in await ledger.get_users(user_ids)}


def file_to_response(file: FileRecord, owner: Optional[UserSummary] = None) -> FileResponse:
    return FileResponse(
        **file.model_dump(exclude={"download_url", "updated_at"}),
        share_url=f"/api/v1/files/share/{file.share_token}",
        owner=owner,
    )


async def file_list(ledger: LedgerStore, files: list[FileRecord]) -> FileListResponse:
    owners = await user_summaries(ledger, {f.user_id for f in files})
    return FileListResponse(
        files=[file_to_response(f, owners.get(f.user_id)) for f in files],
        total=len(files),
    )


async def comments_with_authors(ledger: LedgerStore, comments: list[Comment]) -> list[CommentResponse]:
    authors = await user_summaries(ledger, {c.user_id for c in comments})
    return [CommentResponse(**c.model_dump(), author=authors.get(c.user_id)) for c in comments]


async def get_owned_file(file_id: int, ledger: LedgerStore, current_user: User) -> FileRecord:
    file = await ledger.get_file(file_id)
    if not file:
        raise HTTPException(status_code=404, detail="File not found")
    if file.user_id != current_user.id:
        raise HTTPException(status_code=403, detail="Not the owner of this file")
    return file


def parse_tags(tags: Optional[str]) -> list[str]:
    if not tags:
        return []
    return [t.strip() for t in tags.split(",") if t.strip()]


@router.post("/upload", response_model=FileResponse)
async def upload_file(
    file: UploadFile = File(...),
    title: str = Form(..., min_length=1, max_length=255),
    description: Optional[str] = Form(default=None),
    tags: Optional[str] = Form(default=None),
    ledger: LedgerStore = Depends(get_ledger),
    storage: StorageService = Depends(get_storage),
    current_user: User = Depends(get_current_user),
):
    result = await storage.upload_file(
        user_id=current_user.id,
        file_data=file.file,
        original_filename=file.filename or "file",
        content_type=file.content_type,
    )

    record = await ledger.create_file(
        FileCreate(
            title=title,
            description=description,
            file_name=result["original_filename"],
            file_size=result["size_bytes"],
            file_type=result["content_type"],
            download_url=result["key"],
            tags=parse_tags(tags),
        ),
        owner_id=current_user.id,
    )
    logger.info(f"User {current_user.id} uploaded file {record.id} ({record.file_size} bytes)")
    return file_to_response(record, summarize(current_user))


@router.get("/mine", response_model=FileListResponse)
async def list_my_files(
    ledger: LedgerStore = Depends(get_ledger),
    current_user: User = Depends(get_current_user),
):
    return await file_list(ledger, await ledger.list_files_by_owner(current_user.id))


@router.get("/popular", response_model=FileListResponse)
async def list_popular_files(
    limit: int = Query(default=10, ge=1, le=100),
    ledger: LedgerStore = Depends(get_ledger),
):
    return await file_list(ledger, await ledger.list_popular_files(limit))


@router.get("/recent", response_model=FileListResponse)
async def list_recent_files(
    limit: int = Query(default=10, ge=1, le=100),
    ledger: LedgerStore = Depends(get_ledger),
):
    return await file_list(ledger, await ledger.list_recent_files(limit))


@router.get("/top-rated", response_model=FileListResponse)
async def list_top_rated_files(
    limit: int = Query(default=10, ge=1, le=100),
    ledger: LedgerStore = Depends(get_ledger),
):
    return await file_list(ledger, await ledger.list_top_rated_files(limit))


@router.get("/share/{token}", response_model=SharedFileResponse)
async def get_shared_file(token: str, ledger: LedgerStore = Depends(get_ledger)):
    file = await ledger.get_file_by_share_token(token)
    if not file:
        raise HTTPException(status_code=404, detail="File not found")

    owner = await ledger.get_user(file.user_id)
    comments = await comments_with_authors(ledger, await ledger.list_file_comments(file.id))
    return SharedFileResponse(
        **file_to_response(file, summarize(owner)).model_dump(),
        comments=comments,
    )


@router.get("/share/{token}/download")
async def download_shared_file(
    token: str,
    request: Request,
    ledger: LedgerStore = Depends(get_ledger),
    storage: StorageService = Depends(get_storage),
    current_user: Optional[User] = Depends(get_current_user_optional),
):
    file = await ledger.get_file_by_share_token(token)
    if not file:
        raise HTTPException(status_code=404, detail="File not found")

    await ledger.record_download(
        DownloadCreate(
            file_id=file.id,
            user_id=current_user.id if current_user else None,
            ip_address=get_client_ip(request),
            user_agent=request.headers.get("User-Agent"),
        )
    )

    url = storage.get_presigned_url(file.download_url, expires_in=3600, filename=file.file_name)
    return RedirectResponse(url=url, status_code=302)


@router.patch("/{file_id}", response_model=FileResponse)
async def update_file(
    file_id: int,
    data: FileUpdate,
    ledger: LedgerStore = Depends(get_ledger),
    current_user: User = Depends(get_current_user),
):
    await get_owned_file(file_id, ledger, current_user)
    # download_url is the storage key and is not editable from the API
    changes = data.model_dump(exclude_unset=True, exclude={"download_url"})
    updated = await ledger.update_file(file_id, FileUpdate(**changes))
    if not updated:
        raise HTTPException(status_code=404, detail="File not found")
    return file_to_response(updated, summarize(current_user))


@router.delete("/{file_id}")
async def delete_file(
    file_id: int,
    ledger: LedgerStore = Depends(get_ledger),
    storage: StorageService = Depends(get_storage),
    current_user: User = Depends(get_current_user),
):
    file = await get_owned_file(file_id, ledger, current_user)

    await storage.delete_file(file.download_url)
    deleted = await ledger.delete_file(file_id)

    return {"deleted": deleted, "file_id": file_id}


@router.get("/{file_id}/downloads")
async def list_file_downloads(
    file_id: int,
    ledger: LedgerStore = Depends(get_ledger),
    current_user: User = Depends(get_current_user),
):
    await get_owned_file(file_id, ledger, current_user)
    downloads = await ledger.list_file_downloads(file_id)
    return {
        "ok": True,
        "downloads": [
            {
                "id": d.id,
                "user_id": d.user_id,
                "earnings": d.earnings,
                "created_at": d.created_at.isoformat(),
            }
            for d in downloads
        ],
    }


@router.get("/{file_id}/comments")
async def list_file_comments(file_id: int, ledger: LedgerStore = Depends(get_ledger)):
    if not await ledger.get_file(file_id):
        raise HTTPException(status_code=404, detail="File not found")

    comments = await comments_with_authors(ledger, await ledger.list_file_comments(file_id))
    return {"ok": True, "comments": [c.model_dump(mode="json") for c in comments]}


@router.post("/{file_id}/comments")
async def create_comment(
    file_id: int,
    data: CommentRequest,
    ledger: LedgerStore = Depends(get_ledger),
    current_user: User = Depends(get_current_user),
):
    comment = await ledger.create_comment(
        CommentCreate(file_id=file_id, user_id=current_user.id, comment=data.comment, rating=data.rating)
    )
    response = CommentResponse(**comment.model_dump(), author=summarize(current_user))
    return {"ok": True, "comment": response.model_dump(mode="json")}
