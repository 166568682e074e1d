from typing import Optional, TypedDict, Union

from bson import ObjectId


class UserDocument(TypedDict, total=False):

    _id: Union[ObjectId, str]
    email: str
    full_name: Optional[str]
    profile_image: Optional[str]
