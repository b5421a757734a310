from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from .config import DEFAULT_ICE_SERVERS
from .errors import NegotiationError
from .media import LocalMedia, LocalStream
from .models import (
    AnswerSignal,
    IceCandidatePayload,
    IceSignal,
    OfferSignal,
    SessionDescriptionPayload,
)
from .signaling import SignalingRelay


logger = logging.getLogger(__name__)

CANDIDATE_PREFIX = "candidate:"


class PeerState(str, Enum):
    NONE = "none"
    OFFERING = "offering"
    ANSWERING = "answering"
    CONNECTED = "connected"
    CLOSED = "closed"


@dataclass
class PeerLink:
    """One media connection to one remote participant."""

    peer_id: str
    pc: Any
    state: PeerState = PeerState.NONE
    remote_tracks: List[Any] = field(default_factory=list)

    @property
    def has_remote_description(self) -> bool:
        return self.pc.remoteDescription is not None


PeerConnectionFactory = Callable[[List[str]], Any]


def default_peer_connection_factory(ice_servers: List[str]) -> RTCPeerConnection:
    return RTCPeerConnection(RTCConfiguration(iceServers=[RTCIceServer(urls=list(ice_servers))]))


def candidate_from_payload(payload: IceCandidatePayload) -> Any:
    sdp = payload.candidate
    if sdp.startswith(CANDIDATE_PREFIX):
        sdp = sdp[len(CANDIDATE_PREFIX):]
    candidate = candidate_from_sdp(sdp)
    candidate.sdpMid = payload.sdpMid
    candidate.sdpMLineIndex = payload.sdpMLineIndex
    return candidate


def candidate_to_payload(candidate: Any) -> IceCandidatePayload:
    return IceCandidatePayload(
        candidate=CANDIDATE_PREFIX + candidate_to_sdp(candidate),
        sdpMid=candidate.sdpMid,
        sdpMLineIndex=candidate.sdpMLineIndex,
    )


class PeerConnectionManager:
    """Owns one peer connection per remote participant.

    Candidates that arrive before a connection has its remote description
    are buffered by peer id and applied right after the description is set.
    """

    def __init__(
        self,
        local_user_id: str,
        relay: SignalingRelay,
        media: LocalMedia,
        *,
        ice_servers: Optional[List[str]] = None,
        pc_factory: Optional[PeerConnectionFactory] = None,
        on_change: Optional[Callable[[], None]] = None,
    ) -> None:
        self.local_user_id = local_user_id
        self.relay = relay
        self.media = media
        self.ice_servers = list(ice_servers or DEFAULT_ICE_SERVERS)
        self.pc_factory = pc_factory or default_peer_connection_factory
        self.on_change = on_change
        self.links: Dict[str, PeerLink] = {}
        self.pending_candidates: Dict[str, List[IceCandidatePayload]] = {}

    def __len__(self) -> int:
        return len(self.links)

    def has(self, peer_id: str) -> bool:
        return peer_id in self.links

    def state_of(self, peer_id: str) -> PeerState:
        link = self.links.get(peer_id)
        return link.state if link is not None else PeerState.NONE

    def states(self) -> Dict[str, PeerState]:
        return {peer_id: link.state for peer_id, link in self.links.items()}

    @property
    def remote_streams(self) -> Dict[str, LocalStream]:
        return {
            peer_id: LocalStream(list(link.remote_tracks))
            for peer_id, link in self.links.items()
            if link.remote_tracks
        }

    def get_or_create(self, peer_id: str) -> PeerLink:
        """Return the live link to ``peer_id``, creating it if needed.

        Synchronous, so two interleaved callers always get the same link.
        """
        link = self.links.get(peer_id)
        if link is not None:
            return link

        pc = self.pc_factory(self.ice_servers)
        link = PeerLink(peer_id=peer_id, pc=pc)
        pc.on("track", lambda track: self._on_track(link, track))
        pc.on("icecandidate", lambda candidate: self._on_local_candidate(link, candidate))
        pc.on("connectionstatechange", lambda: self._on_connection_state(link))
        self.links[peer_id] = link
        logger.debug("Created peer connection to %s", peer_id)
        return link

    async def attach_local_tracks(self, link: PeerLink) -> None:
        """Add the local audio and outgoing video track unless already sending."""
        await self.media.ensure()
        self._ensure_open(link)
        sending = {
            sender.track.kind for sender in link.pc.getSenders() if sender.track is not None
        }
        audio = self.media.audio_track
        video = self.media.outgoing_video_track
        if "audio" not in sending and audio is not None:
            link.pc.addTrack(audio)
        if "video" not in sending and video is not None:
            link.pc.addTrack(video)

    async def create_offer(self, peer_id: str) -> None:
        link = self.get_or_create(peer_id)
        link.state = PeerState.OFFERING
        await self.attach_local_tracks(link)
        try:
            offer = await link.pc.createOffer()
            await link.pc.setLocalDescription(offer)
        except Exception as exc:
            raise NegotiationError(f"Could not create offer for {peer_id}: {exc}") from exc
        self._ensure_open(link)
        await self.relay.send(
            OfferSignal(
                sender=self.local_user_id,
                to=peer_id,
                sdp=self._local_description(link),
            )
        )
        logger.info("Sent offer to %s", peer_id)

    async def accept_offer(self, peer_id: str, sdp: SessionDescriptionPayload) -> None:
        link = self.links.get(peer_id)
        if link is not None and link.has_remote_description:
            # the peer restarted its session; start over with a fresh connection
            logger.info("New offer from %s replaces the existing connection", peer_id)
            await self._close_link(self.links.pop(peer_id))
        link = self.get_or_create(peer_id)
        link.state = PeerState.ANSWERING
        try:
            await link.pc.setRemoteDescription(RTCSessionDescription(sdp=sdp.sdp, type=sdp.type))
        except Exception as exc:
            raise NegotiationError(f"Could not apply offer from {peer_id}: {exc}") from exc
        await self._flush_candidates(link)
        await self.attach_local_tracks(link)
        try:
            answer = await link.pc.createAnswer()
            await link.pc.setLocalDescription(answer)
        except Exception as exc:
            raise NegotiationError(f"Could not answer {peer_id}: {exc}") from exc
        self._ensure_open(link)
        await self.relay.send(
            AnswerSignal(
                sender=self.local_user_id,
                to=peer_id,
                sdp=self._local_description(link),
            )
        )
        logger.info("Sent answer to %s", peer_id)

    async def accept_answer(self, peer_id: str, sdp: SessionDescriptionPayload) -> None:
        link = self.links.get(peer_id)
        if link is None or link.state is not PeerState.OFFERING:
            logger.debug("Ignoring answer from %s without a pending offer", peer_id)
            return
        try:
            await link.pc.setRemoteDescription(RTCSessionDescription(sdp=sdp.sdp, type=sdp.type))
        except Exception as exc:
            raise NegotiationError(f"Could not apply answer from {peer_id}: {exc}") from exc
        await self._flush_candidates(link)

    async def add_candidate(self, peer_id: str, payload: IceCandidatePayload) -> None:
        if not payload.candidate:
            return
        link = self.links.get(peer_id)
        if link is None or not link.has_remote_description:
            self.pending_candidates.setdefault(peer_id, []).append(payload)
            return
        await self._apply_candidate(link, payload)

    async def replace_video_track(self, track: Any) -> int:
        """Swap the outgoing video on every connection; returns how many changed."""
        replaced = 0
        for link in list(self.links.values()):
            sender = next(
                (
                    sender
                    for sender in link.pc.getSenders()
                    if sender.track is not None and sender.track.kind == "video"
                ),
                None,
            )
            if sender is None:
                continue
            result = sender.replaceTrack(track)
            if inspect.isawaitable(result):
                await result
            replaced += 1
        return replaced

    async def close(self, peer_id: str) -> None:
        self.pending_candidates.pop(peer_id, None)
        link = self.links.pop(peer_id, None)
        if link is None:
            return
        await self._close_link(link)
        self._changed()

    async def close_all(self) -> None:
        self.pending_candidates.clear()
        links = list(self.links.values())
        self.links.clear()
        for link in links:
            await self._close_link(link)
        if links:
            self._changed()

    async def _close_link(self, link: PeerLink) -> None:
        link.state = PeerState.CLOSED
        try:
            await link.pc.close()
        except Exception as exc:
            logger.warning("Error closing connection to %s: %s", link.peer_id, exc)
        logger.debug("Closed peer connection to %s", link.peer_id)

    async def _flush_candidates(self, link: PeerLink) -> None:
        for payload in self.pending_candidates.pop(link.peer_id, []):
            await self._apply_candidate(link, payload)

    async def _apply_candidate(self, link: PeerLink, payload: IceCandidatePayload) -> None:
        try:
            await link.pc.addIceCandidate(candidate_from_payload(payload))
        except Exception as exc:
            logger.debug("Discarding ICE candidate from %s: %s", link.peer_id, exc)

    async def _on_local_candidate(self, link: PeerLink, candidate: Any) -> None:
        if candidate is None or link.state is PeerState.CLOSED:
            return
        try:
            await self.relay.send(
                IceSignal(
                    sender=self.local_user_id,
                    to=link.peer_id,
                    candidate=candidate_to_payload(candidate),
                )
            )
        except Exception as exc:
            logger.warning("Could not send ICE candidate to %s: %s", link.peer_id, exc)

    def _on_track(self, link: PeerLink, track: Any) -> None:
        if link.state is PeerState.CLOSED:
            return
        # CONNECTED comes from the connection state, not from track arrival
        link.remote_tracks.append(track)
        logger.info("Receiving %s from %s", track.kind, link.peer_id)
        self._changed()

    def _on_connection_state(self, link: PeerLink) -> None:
        if link.state is PeerState.CLOSED:
            return
        connection_state = link.pc.connectionState
        if connection_state == "connected":
            link.state = PeerState.CONNECTED
            self._changed()
        elif connection_state == "failed":
            logger.warning("Connection to %s failed", link.peer_id)

    def _ensure_open(self, link: PeerLink) -> None:
        if link.state is PeerState.CLOSED:
            raise NegotiationError(f"Connection to {link.peer_id} was closed")

    @staticmethod
    def _local_description(link: PeerLink) -> SessionDescriptionPayload:
        description = link.pc.localDescription
        return SessionDescriptionPayload(type=description.type, sdp=description.sdp)

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change()
