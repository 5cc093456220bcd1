"""
Tests pour twitchapi/predictions.py
"""
import asyncio
from datetime import timedelta

import aiohttp
import pytest
from twitchAPI.type import PredictionStatus

from twitchapi.auth_manager import BroadcasterTier
from twitchapi.errors import (
    PredictionPreconditionError,
    PredictionRemoteError,
    TwitchAPIError,
    TwitchHTTPError,
)
from twitchapi.predictions import (
    OutcomeSpec,
    PredictionService,
    PredictionState,
    build_outcome_specs,
    compute_prediction_window,
    match_outcome_ids,
    trim_outcome_title,
)
from twitchapi.transports.oauth_client import TokenResponse

TEAMS = {1: ["alice", "bob"], 2: ["carol"]}


async def create_active(service, helix_client, payload):
    helix_client.create_prediction.return_value = payload
    return await service.create(TEAMS, 2)


@pytest.mark.unit
class TestOutcomeTitles:
    """Titres des options"""

    def test_short_title_unchanged(self):
        """Vérifie qu'un titre court n'est pas modifié"""
        assert trim_outcome_title("alice, bob") == "alice, bob"

    def test_exactly_24_chars_unchanged(self):
        """Vérifie qu'un titre de 24 caractères pile n'est pas tronqué"""
        title = "a" * 24
        assert trim_outcome_title(title) == title

    def test_long_title_truncated_with_marker(self):
        """Vérifie la troncature à 24 caractères + marqueur"""
        title = "a" * 30
        trimmed = trim_outcome_title(title)
        assert trimmed == "a" * 24 + "…"
        assert len(trimmed) == 25

    def test_empty_title(self):
        """Vérifie qu'un titre vide reste vide"""
        assert trim_outcome_title("") == ""

    def test_specs_sorted_by_team(self):
        """Vérifie que les options sont triées par numéro d'équipe"""
        specs = build_outcome_specs({3: ["zed"], 1: ["alice", "bob"]})
        assert specs == [OutcomeSpec(1, "alice, bob"), OutcomeSpec(3, "zed")]


@pytest.mark.unit
class TestPredictionWindow:
    """Durée de vote"""

    def test_base_formula(self):
        """Vérifie 60 + 15 x joueurs x manches"""
        assert compute_prediction_window(4, 2) == 60 + 15 * 4 * 2

    def test_single_player_single_round(self):
        """Vérifie 75s pour un joueur et une manche"""
        assert compute_prediction_window(1, 1) == 75

    def test_capped_at_30_minutes(self):
        """Vérifie le plafond à 1800s"""
        assert compute_prediction_window(100, 5) == 1800

    def test_floor_at_60_seconds(self):
        """Vérifie le plancher à 60s"""
        assert compute_prediction_window(0, 0) == 60
        assert compute_prediction_window(0, 3, base=10) == 60


@pytest.mark.unit
class TestOutcomeMatching:
    """Association équipe -> outcome id"""

    def test_exact_titles(self):
        """Vérifie l'association par titre exact"""
        specs = [OutcomeSpec(1, "alice"), OutcomeSpec(2, "bob")]
        outcomes = [{"id": "o-bob", "title": "bob"}, {"id": "o-alice", "title": "alice"}]

        assert match_outcome_ids(specs, outcomes) == {1: "o-alice", 2: "o-bob"}

    def test_duplicate_titles_each_outcome_used_once(self):
        """Vérifie que chaque outcome n'est utilisé qu'une fois"""
        specs = [OutcomeSpec(1, "bot"), OutcomeSpec(2, "bot")]
        outcomes = [{"id": "o-1", "title": "bot"}, {"id": "o-2", "title": "bot"}]

        assert match_outcome_ids(specs, outcomes) == {1: "o-1", 2: "o-2"}

    def test_falls_back_to_position_when_titles_rewritten(self):
        """Vérifie le repli sur la position si Twitch a réécrit un titre"""
        specs = [OutcomeSpec(1, "alice"), OutcomeSpec(2, "bob")]
        outcomes = [{"id": "o-1", "title": "ALICE"}, {"id": "o-2", "title": "bob"}]

        assert match_outcome_ids(specs, outcomes) == {1: "o-1", 2: "o-2"}

    def test_no_fallback_when_counts_differ(self):
        """Vérifie qu'il n'y a pas de repli si les nombres diffèrent"""
        specs = [OutcomeSpec(1, "alice"), OutcomeSpec(2, "bob")]
        outcomes = [{"id": "o-1", "title": "ALICE"}]

        assert match_outcome_ids(specs, outcomes) == {}


@pytest.mark.unit
class TestCreate:
    """Création de prédiction"""

    @pytest.mark.asyncio
    async def test_create_success(self, prediction_service, helix_client, created_prediction_payload, notifier):
        """Vérifie l'appel Helix et l'état ACTIVE après création"""
        prediction = await create_active(prediction_service, helix_client, created_prediction_payload)

        helix_client.create_prediction.assert_awaited_once_with(
            "access-1", "1234", "Match Winner", ["alice, bob", "carol"], 60 + 15 * 3 * 2
        )
        assert prediction.prediction_id == "pred-1"
        assert prediction.status == PredictionState.ACTIVE
        assert prediction.outcome_id_by_option_key == {1: "outcome-a", 2: "outcome-b"}
        assert prediction.window_seconds == 150
        assert prediction_service.is_active()
        assert "Twitch prediction created: pred-1" in notifier.texts()

    @pytest.mark.asyncio
    async def test_single_team_rejected_without_call(self, prediction_service, helix_client):
        """Vérifie qu'une seule équipe est refusée sans appel réseau"""
        with pytest.raises(PredictionPreconditionError):
            await prediction_service.create({1: ["alice", "bob"]}, 2)

        helix_client.create_prediction.assert_not_awaited()
        assert prediction_service.status == PredictionState.NONE

    @pytest.mark.asyncio
    async def test_too_many_teams_rejected(self, prediction_service, helix_client):
        """Vérifie le refus au-delà de 10 options"""
        teams = {i: [f"p{i}"] for i in range(11)}
        with pytest.raises(PredictionPreconditionError):
            await prediction_service.create(teams, 1)

        helix_client.create_prediction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_second_create_rejected(self, prediction_service, helix_client, created_prediction_payload, notifier):
        """Vérifie qu'une seule prédiction peut vivre à la fois"""
        await create_active(prediction_service, helix_client, created_prediction_payload)

        with pytest.raises(PredictionPreconditionError):
            await prediction_service.create(TEAMS, 2)

        assert helix_client.create_prediction.await_count == 1
        assert "Prediction already started!" in notifier.texts()

    @pytest.mark.asyncio
    async def test_standard_account_rejected(self, prediction_service, authorized_auth, helix_client):
        """Vérifie le refus pour un compte non affiliate/partner"""
        authorized_auth.session.broadcaster_tier = BroadcasterTier.STANDARD

        with pytest.raises(PredictionPreconditionError):
            await prediction_service.create(TEAMS, 2)

        helix_client.create_prediction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_expired_token_rejected(self, prediction_service, clock, helix_client):
        """Vérifie le refus avec un token expiré"""
        clock.advance(5 * 3600)

        with pytest.raises(PredictionPreconditionError):
            await prediction_service.create(TEAMS, 2)

        helix_client.create_prediction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_remote_error_keeps_state_empty(self, prediction_service, helix_client, notifier):
        """Vérifie qu'un refus Twitch laisse l'état à NONE avec statut et body loggés"""
        helix_client.create_prediction.side_effect = TwitchHTTPError(
            400, "Bad Request - title too long", "", "Bad Request - title too long"
        )

        with pytest.raises(PredictionRemoteError) as exc_info:
            await prediction_service.create(TEAMS, 2)

        assert exc_info.value.status == 400
        assert prediction_service.status == PredictionState.NONE
        assert not prediction_service.is_active()
        assert any("title too long" in text for text in notifier.texts())

    @pytest.mark.asyncio
    async def test_library_rejection(self, prediction_service, helix_client):
        """Vérifie qu'un refus côté lib (arguments invalides) devient PredictionRemoteError"""
        helix_client.create_prediction.side_effect = TwitchAPIError("create_prediction: title too long")

        with pytest.raises(PredictionRemoteError):
            await prediction_service.create(TEAMS, 2)

        assert prediction_service.status == PredictionState.NONE

    @pytest.mark.asyncio
    async def test_network_error(self, prediction_service, helix_client):
        """Vérifie qu'une erreur réseau devient PredictionRemoteError"""
        helix_client.create_prediction.side_effect = aiohttp.ClientConnectionError("reset")

        with pytest.raises(PredictionRemoteError):
            await prediction_service.create(TEAMS, 2)

        assert prediction_service.status == PredictionState.NONE

    @pytest.mark.asyncio
    async def test_empty_data_rejected(self, prediction_service, helix_client):
        """Vérifie qu'une réponse vide est traitée comme un refus"""
        helix_client.create_prediction.return_value = None

        with pytest.raises(PredictionRemoteError):
            await prediction_service.create(TEAMS, 2)

        assert prediction_service.prediction.prediction_id is None

    @pytest.mark.asyncio
    async def test_broadcaster_id_pulled_from_auth(self, authorized_auth, helix_client, created_prediction_payload):
        """Vérifie que le broadcaster_id est repris de l'AuthManager"""
        service = PredictionService(authorized_auth, helix_client)
        authorized_auth.session.broadcaster_id = "9999"

        await create_active(service, helix_client, created_prediction_payload)

        assert helix_client.create_prediction.await_args.args[1] == "9999"

    @pytest.mark.asyncio
    async def test_missing_broadcaster_id_rejected(self, authorized_auth, helix_client):
        """Vérifie le refus sans broadcaster_id"""
        authorized_auth.session.broadcaster_id = ""
        service = PredictionService(authorized_auth, helix_client)

        with pytest.raises(PredictionPreconditionError):
            await service.create(TEAMS, 2)

        helix_client.create_prediction.assert_not_awaited()
        assert not service.is_active()


@pytest.mark.unit
class TestResolveCancel:
    """Résolution et annulation"""

    @pytest.mark.asyncio
    async def test_resolve_sends_winning_outcome(self, prediction_service, helix_client, created_prediction_payload, notifier):
        """Vérifie RESOLVED + outcome gagnant puis remise à zéro"""
        await create_active(prediction_service, helix_client, created_prediction_payload)

        await prediction_service.resolve(2)

        helix_client.end_prediction.assert_awaited_once_with(
            "access-1", "1234", "pred-1", PredictionStatus.RESOLVED, "outcome-b"
        )
        assert prediction_service.status == PredictionState.NONE
        assert prediction_service.prediction.outcome_id_by_option_key == {}
        assert not prediction_service.is_active()
        assert "Twitch prediction resolved: pred-1" in notifier.texts()

    @pytest.mark.asyncio
    async def test_resolve_unknown_team_rejected(self, prediction_service, helix_client, created_prediction_payload):
        """Vérifie le refus pour une équipe sans outcome"""
        await create_active(prediction_service, helix_client, created_prediction_payload)

        with pytest.raises(PredictionPreconditionError):
            await prediction_service.resolve(7)

        helix_client.end_prediction.assert_not_awaited()
        assert prediction_service.status == PredictionState.ACTIVE

    @pytest.mark.asyncio
    async def test_resolve_without_prediction_rejected(self, prediction_service, helix_client):
        """Vérifie le refus sans prédiction active"""
        with pytest.raises(PredictionPreconditionError):
            await prediction_service.resolve(1)

        helix_client.end_prediction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_sends_canceled(self, prediction_service, helix_client, created_prediction_payload):
        """Vérifie l'appel CANCELED sans outcome gagnant"""
        await create_active(prediction_service, helix_client, created_prediction_payload)

        await prediction_service.cancel()

        helix_client.end_prediction.assert_awaited_once_with(
            "access-1", "1234", "pred-1", PredictionStatus.CANCELED, None
        )
        assert prediction_service.status == PredictionState.NONE

    @pytest.mark.asyncio
    async def test_failed_end_keeps_prediction_active(self, prediction_service, helix_client, created_prediction_payload):
        """Vérifie qu'un échec de fin laisse la prédiction ACTIVE"""
        await create_active(prediction_service, helix_client, created_prediction_payload)
        helix_client.end_prediction.side_effect = TwitchHTTPError(503, "oops", "", "Internal Server Error")

        with pytest.raises(PredictionRemoteError):
            await prediction_service.resolve(1)

        assert prediction_service.status == PredictionState.ACTIVE
        assert prediction_service.prediction.prediction_id == "pred-1"

    @pytest.mark.asyncio
    async def test_abandon_forgets_without_call(self, prediction_service, helix_client, created_prediction_payload):
        """Vérifie qu'abandon() oublie la prédiction sans appeler Twitch"""
        await create_active(prediction_service, helix_client, created_prediction_payload)

        prediction_service.abandon()

        assert prediction_service.status == PredictionState.NONE
        helix_client.end_prediction.assert_not_awaited()


@pytest.mark.unit
class TestShutdownCancel:
    """Annulation à l'arrêt du process"""

    @pytest.mark.asyncio
    async def test_nothing_to_cancel(self, prediction_service, helix_client):
        """Vérifie qu'il n'y a aucun appel sans prédiction"""
        assert await prediction_service.cancel_on_shutdown() is False
        helix_client.end_prediction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_confirmed(self, prediction_service, helix_client, created_prediction_payload):
        """Vérifie le retour True quand Twitch confirme"""
        await create_active(prediction_service, helix_client, created_prediction_payload)

        assert await prediction_service.cancel_on_shutdown() is True
        assert prediction_service.status == PredictionState.NONE

    @pytest.mark.asyncio
    async def test_cancel_times_out(self, prediction_service, helix_client, created_prediction_payload, notifier):
        """Vérifie que l'attente est bornée par le timeout"""
        await create_active(prediction_service, helix_client, created_prediction_payload)

        async def hang(*args):
            await asyncio.sleep(10)

        helix_client.end_prediction.side_effect = hang

        assert await prediction_service.cancel_on_shutdown(timeout=0.01) is False
        assert any("timed out" in text for text in notifier.texts())


@pytest.mark.integration
class TestTokenExpiryDuringPrediction:
    """Token qui expire pendant qu'une prédiction est ouverte"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("action", ["resolve", "cancel"])
    async def test_end_after_expiry_refreshes_on_demand(
        self, prediction_service, authorized_auth, oauth_client, helix_client, clock, created_prediction_payload, action
    ):
        """Vérifie qu'un match plus long que le token se termine quand même"""
        await create_active(prediction_service, helix_client, created_prediction_payload)
        authorized_auth.session.access_token_expires_at = clock() + timedelta(seconds=900)
        oauth_client.refresh_access_token.return_value = TokenResponse("access-2", "refresh-2", 14400)

        # La boucle diffère tant que la prédiction est ouverte
        assert await authorized_auth.run_refresh_cycle() == 30
        oauth_client.refresh_access_token.assert_not_awaited()

        clock.advance(1000)
        assert not authorized_auth.is_token_valid()

        if action == "resolve":
            await prediction_service.resolve(1)
        else:
            await prediction_service.cancel()

        oauth_client.refresh_access_token.assert_awaited_once_with("refresh-1")
        assert helix_client.end_prediction.await_args.args[0] == "access-2"
        assert prediction_service.status == PredictionState.NONE

        # Plus de prédiction : un nouveau match peut démarrer
        await create_active(prediction_service, helix_client, created_prediction_payload)
        assert prediction_service.status == PredictionState.ACTIVE

    @pytest.mark.asyncio
    async def test_near_expiry_refreshed_before_resolve(
        self, prediction_service, authorized_auth, oauth_client, helix_client, clock, created_prediction_payload
    ):
        """Vérifie le refresh juste avant l'appel Helix si le token est dans la marge"""
        await create_active(prediction_service, helix_client, created_prediction_payload)
        authorized_auth.session.access_token_expires_at = clock() + timedelta(seconds=900)
        oauth_client.refresh_access_token.return_value = TokenResponse("access-2", "refresh-2", 14400)

        await prediction_service.resolve(1)

        assert helix_client.end_prediction.await_args.args[0] == "access-2"

    @pytest.mark.asyncio
    async def test_failed_refresh_then_loop_recovers(
        self, prediction_service, authorized_auth, oauth_client, helix_client, clock, created_prediction_payload
    ):
        """Vérifie qu'après un refresh raté, la boucle renouvelle le token mort et débloque la fin"""
        await create_active(prediction_service, helix_client, created_prediction_payload)
        clock.advance(4 * 3600 + 10)
        oauth_client.refresh_access_token.side_effect = [
            aiohttp.ClientConnectionError("down"),
            TokenResponse("access-2", "refresh-2", 14400),
        ]

        with pytest.raises(PredictionPreconditionError):
            await prediction_service.resolve(1)
        assert prediction_service.status == PredictionState.ACTIVE

        # Token mort : la boucle n'attend plus la fin de la prédiction
        await authorized_auth.run_refresh_cycle()
        assert authorized_auth.current_token() == "access-2"

        await prediction_service.resolve(1)
        assert prediction_service.status == PredictionState.NONE


@pytest.mark.integration
class TestRefreshInterleaving:
    """Refresh et prédiction sur la même boucle"""

    @pytest.mark.asyncio
    async def test_refresh_deferred_while_prediction_active(
        self, prediction_service, authorized_auth, oauth_client, helix_client, clock, created_prediction_payload
    ):
        """Vérifie que la boucle ne touche pas au token tant que la prédiction est ACTIVE"""
        await create_active(prediction_service, helix_client, created_prediction_payload)
        authorized_auth.session.access_token_expires_at = clock() + timedelta(seconds=900)
        oauth_client.refresh_access_token.return_value = TokenResponse("access-2", "refresh-2", 14400)

        for _ in range(3):
            assert await authorized_auth.run_refresh_cycle() == 30

        oauth_client.refresh_access_token.assert_not_awaited()
        assert authorized_auth.session.access_token == "access-1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("action, state", [
        ("resolve", PredictionState.RESOLVING),
        ("cancel", PredictionState.CANCELING),
    ])
    async def test_refresh_deferred_while_ending(
        self, prediction_service, authorized_auth, oauth_client, helix_client, clock, created_prediction_payload,
        action, state
    ):
        """Vérifie que la boucle ne touche pas au token pendant RESOLVING / CANCELING"""
        await create_active(prediction_service, helix_client, created_prediction_payload)
        release = asyncio.Event()

        async def slow_end(*args):
            await release.wait()
            return {"id": "pred-1"}

        helix_client.end_prediction.side_effect = slow_end
        oauth_client.refresh_access_token.return_value = TokenResponse("access-2", "refresh-2", 14400)

        call = prediction_service.resolve(1) if action == "resolve" else prediction_service.cancel()
        ending = asyncio.ensure_future(call)
        await asyncio.sleep(0)
        assert prediction_service.status == state

        # Le token entre dans la marge pendant que l'appel Helix est suspendu
        authorized_auth.session.access_token_expires_at = clock() + timedelta(seconds=900)
        expires_at = authorized_auth.session.access_token_expires_at

        assert await authorized_auth.run_refresh_cycle() == 30
        oauth_client.refresh_access_token.assert_not_awaited()
        assert authorized_auth.session.access_token == "access-1"
        assert authorized_auth.session.refresh_token == "refresh-1"
        assert authorized_auth.session.access_token_expires_at == expires_at

        release.set()
        await ending
        assert prediction_service.status == PredictionState.NONE

        # Prédiction terminée : le refresh passe
        await authorized_auth.run_refresh_cycle()
        assert authorized_auth.session.access_token == "access-2"

    @pytest.mark.asyncio
    async def test_create_waits_for_refresh_in_flight(
        self, prediction_service, authorized_auth, oauth_client, helix_client, clock, created_prediction_payload
    ):
        """Vérifie qu'un create attend le refresh déjà en vol et utilise le nouveau token"""
        authorized_auth.session.access_token_expires_at = clock() + timedelta(seconds=900)
        release = asyncio.Event()

        async def slow_refresh(refresh_token):
            await release.wait()
            return TokenResponse("access-2", "refresh-2", 14400)

        oauth_client.refresh_access_token.side_effect = slow_refresh
        helix_client.create_prediction.return_value = created_prediction_payload

        refresh = asyncio.ensure_future(authorized_auth.run_refresh_cycle())
        await asyncio.sleep(0)
        assert authorized_auth.refresh_in_progress

        create = asyncio.ensure_future(prediction_service.create(TEAMS, 2))
        await asyncio.sleep(0)
        assert prediction_service.is_active()
        helix_client.create_prediction.assert_not_awaited()

        release.set()
        await refresh
        await create

        assert helix_client.create_prediction.await_args.args[0] == "access-2"
        assert oauth_client.refresh_access_token.await_count == 1
        assert prediction_service.status == PredictionState.ACTIVE
