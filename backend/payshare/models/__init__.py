from payshare.database import Base
from payshare.models.user import User
from payshare.models.file import File
from payshare.models.download import Download
from payshare.models.comment import Comment
from payshare.models.payment import Payment

__all__ = [
    "Base",
    "User",
    "File",
    "Download",
    "Comment",
    "Payment",
]
