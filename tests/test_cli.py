from pothichor import cli


def test_meals_and_sweep_commands(market, house, make_draft, clock, monkeypatch, capsys):
    monkeypatch.setenv("COLUMNS", "200")
    market.listings.create_listing(house, make_draft(title="Rajma Chawal"))
    monkeypatch.setattr(cli, "build_marketplace", lambda settings: market)

    assert cli.main(["meals"]) == 0
    assert "Rajma Chawal" in capsys.readouterr().out

    clock.advance(hours=5)
    assert cli.main(["sweep"]) == 0
    assert "Settled 1 meal(s)" in capsys.readouterr().out

    assert cli.main(["past-orders", "--house", house.id]) == 0
    assert "Rajma Chawal" in capsys.readouterr().out


def test_remind_exit_code_reflects_failures(market, house, student, make_draft, clock, dispatcher, monkeypatch):
    meal = market.listings.create_listing(house, make_draft())
    market.ordering.place_order(student, meal.id, 1)
    monkeypatch.setattr(cli, "build_marketplace", lambda settings: market)
    clock.advance(hours=3)
    dispatcher.fail_always = True

    assert cli.main(["remind"]) == 1

    dispatcher.fail_always = False
    clock.advance(minutes=1)
    assert cli.main(["remind", "--email", "asha@example.com"]) == 0
