"""Profile CRUD routes.

Learn: Routes translate HTTP to service calls and service errors to status
codes. Paths reach these handlers already lowercased by
CaseInsensitivePathMiddleware, so /PROFILES/{id} and /profiles/{id} hit
the same route.

Write responses (POST and PUT) share one shape: 201 Created, a Location
header pointing at the profile, JSON content type and no body.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from profilecast.schemas.profile import ProfileRead, ProfileWrite
from profilecast.services.profile_service import ProfileNotFoundError, ProfileService
from profilecast.store.base import Profile

router = APIRouter()


def get_profile_service(request: Request) -> ProfileService:
    return request.app.state.profile_service


def _write_response(profile: Profile) -> Response:
    return Response(
        status_code=201,
        headers={"Location": f"/profiles/{profile.id}"},
        media_type="application/json",
    )


@router.get("/profiles", response_model=list[ProfileRead])
async def list_profiles(svc: ProfileService = Depends(get_profile_service)):
    return await svc.all()


@router.get("/profiles/{profile_id}", response_model=ProfileRead)
async def get_profile(profile_id: str, svc: ProfileService = Depends(get_profile_service)):
    profile = await svc.get(profile_id)
    if not profile:
        raise HTTPException(status_code=404, detail="Profile not found")
    return profile


@router.post("/profiles", status_code=201, response_class=Response)
async def create_profile(body: ProfileWrite, svc: ProfileService = Depends(get_profile_service)):
    profile = await svc.create(body.email)
    return _write_response(profile)


@router.put("/profiles/{profile_id}", status_code=201, response_class=Response)
async def update_profile(
    profile_id: str,
    body: ProfileWrite,
    svc: ProfileService = Depends(get_profile_service),
):
    """Replace a profile's email. Answers 201 + Location like POST does."""
    try:
        profile = await svc.update(profile_id, body.email)
    except ProfileNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _write_response(profile)


@router.delete("/profiles/{profile_id}", response_model=ProfileRead)
async def delete_profile(profile_id: str, svc: ProfileService = Depends(get_profile_service)):
    try:
        return await svc.delete(profile_id)
    except ProfileNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
