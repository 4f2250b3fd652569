"""
Profile Directory.

This module defines the `ProfileDirectory`, which keeps the client-side cache
of user profiles (id, username, email, avatar, last seen) that the room
directory, presence display and search results are rendered from.

Key Components:
- `load_own`: Fetches the signed-in user's own profile.
- `ensure`: Batch-fetches every requested id that is not cached yet; ids
  already cached cost nothing.
- `apply_profile_change`: Merges a profile change pushed by the change feed.
  Partial payloads only touch the fields they carry.
- `save_profile`: Uploads an optional avatar, then upserts the profile row.
- `search_users`: Username search that leaves out the viewer and everyone the
  viewer already has a room with.

Architectural Design:
- Cache-First Lookup: Like a read-through cache, lookups hit the snapshot
  first and only the misses reach the store.
- Stale Result Guard: Every store round-trip is bracketed by a session context
  check, so a sign-out during a fetch discards the result.
"""

import logging
from typing import Iterable, List, Optional

from core.events import ProfileChanged
from core.exceptions import StaleSessionError
from core.models import Attachment, Profile
from core.validation import InputValidator
from providers.backend import DataStore, ObjectStorage, eq, ilike, in_
from services.state import StateContainer, SyncContext

logger = logging.getLogger(__name__)


class ProfileDirectory:
    """Client-side profile cache backed by the `profiles` table"""

    def __init__(
        self,
        store: DataStore,
        storage: ObjectStorage,
        state: StateContainer,
        avatar_bucket: str = "avatarsbucket",
    ):
        self.store = store
        self.storage = storage
        self.state = state
        self.avatar_bucket = avatar_bucket

    def get(self, user_id: str) -> Optional[Profile]:
        return self.state.snapshot.profiles.get(user_id)

    async def load_own(self, ctx: SyncContext, user_id: str) -> Optional[Profile]:
        """Fetch the signed-in user's profile into `snapshot.profile`"""
        try:
            rows = await self.store.select("profiles", [eq("id", user_id)])
            self.state.ensure_current(ctx, "load profile")
        except StaleSessionError:
            return None
        except Exception as e:
            await self.state.report_error(ctx, "Error loading profile", e)
            return None

        if not rows:
            logger.warning(f"No profile row for user {user_id}")
            self.state.notify("error", "Error loading profile: profile not found")
            return None

        profile = Profile.model_validate(rows[0])
        with self.state.transaction():
            self.state.commit(profile=profile)
            self.state.put_profiles([profile])
        logger.info(f"Loaded own profile for {profile.username or user_id}")
        return profile

    async def ensure(self, ctx: SyncContext, user_ids: Iterable[str]) -> bool:
        """Fetch every id not already cached, in one batch"""
        cached = self.state.snapshot.profiles
        missing = sorted({uid for uid in user_ids if uid and uid not in cached})
        if not missing:
            return True

        try:
            rows = await self.store.select("profiles", [in_("id", missing)])
            self.state.ensure_current(ctx, "load profiles")
        except StaleSessionError:
            return False
        except Exception as e:
            await self.state.report_error(ctx, "Error loading profiles", e)
            return False

        profiles = [Profile.model_validate(row) for row in rows]
        if profiles:
            self.state.put_profiles(profiles)
        logger.debug(f"Fetched {len(profiles)} of {len(missing)} missing profiles")
        return True

    async def refresh_cached(self, ctx: SyncContext) -> bool:
        """Re-read every cached profile, used after the feed reconnects"""
        ids = sorted(self.state.snapshot.profiles)
        if not ids:
            return True

        try:
            rows = await self.store.select("profiles", [in_("id", ids)])
            self.state.ensure_current(ctx, "refresh profiles")
        except StaleSessionError:
            return False
        except Exception as e:
            await self.state.report_error(ctx, "Error refreshing profiles", e)
            return False

        self.state.put_profiles([Profile.model_validate(row) for row in rows])
        return True

    def apply_profile_change(self, event: ProfileChanged) -> Optional[Profile]:
        changes = {k: v for k, v in event.changes.items() if k in Profile.model_fields and k != "id"}
        current = self.get(event.profile_id)
        if current is None:
            own = self.state.snapshot.profile
            current = own if own is not None and own.id == event.profile_id else None

        if current is None:
            merged = Profile.model_validate({"id": event.profile_id, **changes})
        else:
            merged = Profile.model_validate({**current.model_dump(), **changes})

        self.state.put_profiles([merged])
        return merged

    async def save_profile(
        self,
        ctx: SyncContext,
        user_id: str,
        username: str,
        email: Optional[str] = None,
        avatar: Optional[Attachment] = None,
    ) -> Optional[Profile]:
        """Create or update a profile, uploading the avatar first when given"""
        # columns left out of the row keep their stored value
        row = {"id": user_id, "username": username}
        if email is not None:
            row["email"] = email

        try:
            if avatar is not None:
                path = f"avatars/{user_id}/{avatar.filename}"
                await self.storage.upload(
                    self.avatar_bucket, path, avatar.data, avatar.content_type, upsert=True
                )
                row["avatar_url"] = self.storage.get_public_url(self.avatar_bucket, path)
                logger.info(f"Uploaded avatar for {user_id} to {path}")

            saved = await self.store.upsert("profiles", [row])
            self.state.ensure_current(ctx, "save profile")
        except StaleSessionError:
            return None
        except Exception as e:
            await self.state.report_error(ctx, "Error saving profile", e)
            return None

        profile = Profile.model_validate(saved[0] if saved else row)
        with self.state.transaction():
            if ctx.user_id == user_id:
                self.state.commit(profile=profile)
            self.state.put_profiles([profile])
        return profile

    async def search_users(
        self,
        ctx: SyncContext,
        query: str,
        viewer_id: str,
        exclude_ids: Iterable[str] = (),
    ) -> List[Profile]:
        """Find users by username fragment; a blank query is a ValidationError"""
        query = InputValidator.validate_search_query(query)
        excluded = set(exclude_ids) | {viewer_id}

        try:
            rows = await self.store.select(
                "profiles", [ilike("username", query)], order_by="username"
            )
            self.state.ensure_current(ctx, "search users")
        except StaleSessionError:
            return []
        except Exception as e:
            await self.state.report_error(ctx, "Error searching users", e)
            return []

        results = [Profile.model_validate(r) for r in rows if r.get("id") not in excluded]
        if results:
            self.state.put_profiles(results)
        else:
            self.state.notify("info", "No users found")
        logger.debug(f"User search '{query}' matched {len(results)} users")
        return results
